"""Copy-on-write linear memory with a symbolic byte overlay."""
from __future__ import annotations

import z3

from ..errors import NonConcreteValue, Trap
from .values import Concrete, Symbolic, Value, to_signed

__all__ = ["CHUNK_SIZE", "MAX_PAGES", "PAGE_SIZE", "LinearMemory"]

PAGE_SIZE = 65_536
MAX_PAGES = 65_536
CHUNK_SIZE = 4_096


class LinearMemory:
    """Byte-addressed memory split into fixed-size chunks.

    ``clone()`` shares every chunk with the copy; whichever side writes to a
    chunk first takes a private copy of it. Bytes written from symbolic
    values live in ``_symbolic`` as 8-bit z3 terms and shadow the concrete
    byte at the same address.
    """

    __slots__ = ("pages", "max_pages", "_chunks", "_owned", "_symbolic")

    def __init__(self, pages: int = 0, max_pages: int | None = None) -> None:
        self.pages = pages
        self.max_pages = MAX_PAGES if max_pages is None else min(max_pages, MAX_PAGES)
        self._chunks: dict[int, bytearray] = {}
        self._owned: set[int] = set()
        self._symbolic: dict[int, z3.BitVecRef] = {}

    @property
    def size(self) -> int:
        return self.pages * PAGE_SIZE

    def clone(self) -> LinearMemory:
        copy = LinearMemory.__new__(LinearMemory)
        copy.pages = self.pages
        copy.max_pages = self.max_pages
        copy._chunks = dict(self._chunks)
        copy._owned = set()
        copy._symbolic = dict(self._symbolic)
        self._owned = set()
        return copy

    def grow(self, delta: int) -> int:
        old = self.pages
        if delta < 0 or old + delta > self.max_pages:
            return -1
        self.pages = old + delta
        return old

    def check_bounds(self, address: int, length: int) -> None:
        if address < 0 or length < 0 or address + length > self.size:
            raise Trap(f"out of bounds memory access at {address} (+{length}, size {self.size})")

    def _writable_chunk(self, index: int) -> bytearray:
        if index not in self._owned:
            existing = self._chunks.get(index)
            self._chunks[index] = bytearray(existing) if existing is not None else bytearray(CHUNK_SIZE)
            self._owned.add(index)
        return self._chunks[index]

    def _read_raw(self, address: int, length: int) -> bytes:
        out = bytearray()
        end = address + length
        while address < end:
            index, start = divmod(address, CHUNK_SIZE)
            take = min(CHUNK_SIZE - start, end - address)
            chunk = self._chunks.get(index)
            out += chunk[start : start + take] if chunk is not None else bytes(take)
            address += take
        return bytes(out)

    def _write_raw(self, address: int, data: bytes) -> None:
        pos = 0
        while pos < len(data):
            index, start = divmod(address + pos, CHUNK_SIZE)
            take = min(CHUNK_SIZE - start, len(data) - pos)
            chunk = self._writable_chunk(index)
            chunk[start : start + take] = data[pos : pos + take]
            pos += take

    def _symbolic_in(self, address: int, length: int) -> list[int]:
        if not self._symbolic:
            return []
        if length <= 64:
            return [a for a in range(address, address + length) if a in self._symbolic]
        return sorted(a for a in self._symbolic if address <= a < address + length)

    def has_symbolic(self, address: int, length: int) -> bool:
        return bool(self._symbolic_in(address, length))

    def read_bytes(self, address: int, length: int) -> bytes:
        """Read concrete bytes; fails if any byte in range is symbolic."""
        self.check_bounds(address, length)
        if self.has_symbolic(address, length):
            raise NonConcreteValue(
                f"memory range {address}..{address + length} holds symbolic bytes", reason="SymbolicBytes"
            )
        return self._read_raw(address, length)

    def write_bytes(self, address: int, data: bytes) -> None:
        self.check_bounds(address, len(data))
        for a in self._symbolic_in(address, len(data)):
            del self._symbolic[a]
        self._write_raw(address, data)

    def load(self, address: int, width: int, bits: int, signed: bool) -> Value:
        self.check_bounds(address, width)
        raw = self._read_raw(address, width)
        if not self.has_symbolic(address, width):
            value = int.from_bytes(raw, "little")
            if signed:
                value = to_signed(value, width * 8)
            return Concrete(value, bits)
        parts = [
            self._symbolic.get(address + i, z3.BitVecVal(raw[i], 8)) for i in range(width)
        ]
        term = z3.Concat(*reversed(parts)) if width > 1 else parts[0]
        if width * 8 < bits:
            term = (z3.SignExt if signed else z3.ZeroExt)(bits - width * 8, term)
        term = z3.simplify(term)
        if z3.is_bv_value(term):
            return Concrete(term.as_long(), bits)
        return Symbolic(term, bits)

    def store(self, address: int, width: int, value: Value) -> None:
        self.check_bounds(address, width)
        if isinstance(value, Concrete):
            self.write_bytes(address, (value.value & ((1 << (width * 8)) - 1)).to_bytes(width, "little"))
            return
        self._write_raw(address, bytes(width))
        for i in range(width):
            self._symbolic[address + i] = z3.simplify(z3.Extract(8 * i + 7, 8 * i, value.term))

    def fill(self, address: int, byte: int, length: int) -> None:
        self.check_bounds(address, length)
        self.write_bytes(address, bytes([byte & 0xFF]) * length)

    def copy(self, destination: int, source: int, length: int) -> None:
        self.check_bounds(source, length)
        self.check_bounds(destination, length)
        moved = {a - source: self._symbolic[a] for a in self._symbolic_in(source, length)}
        self.write_bytes(destination, self._read_raw(source, length))
        for delta, term in moved.items():
            self._symbolic[destination + delta] = term
