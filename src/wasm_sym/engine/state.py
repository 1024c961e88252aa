"""Machine state models for dual-mode execution."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

import z3

from ..errors import StateError
from ..wasm.parser import Instruction, WasmModule
from .memory import LinearMemory
from .values import Concrete, Value, compare, ite, render, truth

# Address the test contract is deployed at.
TEST_ADDRESS = 0x7E57
# Low byte of every bytes handle passed across the host ABI.
BYTES_HANDLE_TAG = 0x0B
# Table entries and reference values use this for ``ref.null``.
NULL_REF = 0xFFFF_FFFF


class Mode(StrEnum):
    CONCRETE = "concrete"
    SYMBOLIC = "symbolic"


class Status(StrEnum):
    RUNNING = "running"
    RETURNED = "returned"
    FAILED = "failed"
    STUCK = "stuck"
    REJECTED = "rejected"


class FrameKind(StrEnum):
    ENTRY = "entry"
    CALL = "call"
    INVOKE = "invoke"
    START = "start"


@dataclass(slots=True, frozen=True)
class Domain:
    bits: int
    low: int | None = None
    high: int | None = None

    @property
    def bounded(self) -> bool:
        return self.low is not None or self.high is not None


@dataclass(slots=True, frozen=True)
class Label:
    arity: int
    height: int
    continuation: int
    loop_start: int = -1

    @property
    def is_loop(self) -> bool:
        return self.loop_start >= 0


@dataclass(slots=True)
class Frame:
    address: int
    func_index: int
    module: WasmModule
    code: list[Instruction]
    locals: list[Value]
    arity: int
    kind: FrameKind = FrameKind.CALL
    pc: int = 0
    stack: list[Value] = field(default_factory=list)
    labels: list[Label] = field(default_factory=list)
    result_bits: tuple[int, ...] = ()

    def clone(self) -> Frame:
        return Frame(
            address=self.address,
            func_index=self.func_index,
            module=self.module,
            code=self.code,
            locals=list(self.locals),
            arity=self.arity,
            kind=self.kind,
            pc=self.pc,
            stack=list(self.stack),
            labels=list(self.labels),
            result_bits=self.result_bits,
        )


@dataclass(slots=True)
class Instance:
    address: int
    module_hash: bytes
    memory: LinearMemory | None = None
    globals: list[Value] = field(default_factory=list)
    table: list[int | None] = field(default_factory=list)
    dropped_data: set[int] = field(default_factory=set)
    dropped_elements: set[int] = field(default_factory=set)

    def clone(self) -> Instance:
        return Instance(
            address=self.address,
            module_hash=self.module_hash,
            memory=self.memory.clone() if self.memory is not None else None,
            globals=list(self.globals),
            table=list(self.table),
            dropped_data=set(self.dropped_data),
            dropped_elements=set(self.dropped_elements),
        )


@dataclass(slots=True)
class StoragePartition:
    """Key/value storage of one contract address.

    Writes with concrete keys go to ``entries`` while no symbolic key has been
    written. From the first symbolic-key write on, every write is appended to
    ``overlay`` and reads fold it into an if-then-else chain.
    """

    entries: dict[int, Value] = field(default_factory=dict)
    overlay: list[tuple[Value, Value]] = field(default_factory=list)

    def clone(self) -> StoragePartition:
        return StoragePartition(entries=dict(self.entries), overlay=list(self.overlay))

    def write(self, key: Value, value: Value) -> None:
        if isinstance(key, Concrete) and not self.overlay:
            self.entries[key.value] = value
        else:
            self.overlay.append((key, value))

    def read(self, key: Value) -> tuple[Value, Value]:
        """Return ``(value, present)``; absent keys read as zero."""
        zero = Concrete(0, 64)
        if isinstance(key, Concrete):
            stored = self.entries.get(key.value)
            value: Value = stored if stored is not None else zero
            present: Value = Concrete(int(stored is not None), 32)
        else:
            value, present = zero, Concrete(0, 32)
            for stored_key, stored in self.entries.items():
                hit = truth(compare("eq", key, Concrete(stored_key, 64)))
                value = ite(hit, stored, value)
                present = ite(hit, Concrete(1, 32), present)
        for written_key, written in self.overlay:
            hit = truth(compare("eq", key, written_key))
            value = ite(hit, written, value)
            present = ite(hit, Concrete(1, 32), present)
        return value, present

    def items(self) -> list[tuple[str, str]]:
        pairs = [(str(k), render(v)) for k, v in self.entries.items()]
        pairs.extend((render(k), render(v)) for k, v in self.overlay)
        return pairs


@dataclass(slots=True)
class HostCallRecord:
    name: str
    address: int
    args: tuple[str, ...] = ()
    result: str | None = None

    def __str__(self) -> str:
        text = f"{self.name}({', '.join(self.args)}) @ {self.address:#x}"
        return f"{text} -> {self.result}" if self.result is not None else text


@dataclass(slots=True)
class MachineState:
    mode: Mode = Mode.CONCRETE
    instances: dict[int, Instance] = field(default_factory=dict)
    frames: list[Frame] = field(default_factory=list)
    storage: dict[int, StoragePartition] = field(default_factory=dict)
    path_condition: tuple[z3.BoolRef, ...] = ()
    variables: dict[str, Domain] = field(default_factory=dict)
    host_calls: list[HostCallRecord] = field(default_factory=list)
    handles: list[bytes] = field(default_factory=list)
    loop_counts: dict[tuple[int, int, int, int], int] = field(default_factory=dict)
    steps: int = 0
    location: str | None = None

    status: Status = Status.RUNNING
    result: Value | None = None
    error: StateError | None = None
    error_message: str | None = None

    def clone(self) -> MachineState:
        return MachineState(
            mode=self.mode,
            instances={address: inst.clone() for address, inst in self.instances.items()},
            frames=[frame.clone() for frame in self.frames],
            storage={address: part.clone() for address, part in self.storage.items()},
            path_condition=self.path_condition,
            variables=dict(self.variables),
            host_calls=list(self.host_calls),
            handles=list(self.handles),
            loop_counts=dict(self.loop_counts),
            steps=self.steps,
            location=self.location,
            status=self.status,
            result=self.result,
            error=self.error,
            error_message=self.error_message,
        )

    @property
    def halted(self) -> bool:
        return self.status != Status.RUNNING

    @property
    def depth(self) -> int:
        return len(self.path_condition)

    @property
    def frame(self) -> Frame:
        if not self.frames:
            raise IndexError("no active frame")
        return self.frames[-1]

    @property
    def current_address(self) -> int:
        return self.frame.address

    @property
    def instance(self) -> Instance:
        return self.instances[self.frame.address]

    def push(self, value: Value) -> None:
        self.frame.stack.append(value)

    def pop(self) -> Value:
        stack = self.frame.stack
        if not stack:
            raise IndexError("operand stack underflow")
        return stack.pop()

    def pop_many(self, count: int) -> list[Value]:
        if count == 0:
            return []
        stack = self.frame.stack
        if len(stack) < count:
            raise IndexError("operand stack underflow")
        values = stack[-count:]
        del stack[-count:]
        return values

    def add_constraint(self, condition: z3.BoolRef) -> None:
        self.path_condition = self.path_condition + (condition,)

    def branch(self, condition: z3.BoolRef) -> MachineState:
        """Clone this state and constrain the copy with *condition*."""
        child = self.clone()
        child.add_constraint(condition)
        return child

    def partition(self, address: int | None = None) -> StoragePartition:
        key = self.current_address if address is None else address
        return self.storage.setdefault(key, StoragePartition())

    def new_handle(self, data: bytes) -> int:
        self.handles.append(bytes(data))
        return ((len(self.handles) - 1) << 8) | BYTES_HANDLE_TAG

    def handle_bytes(self, handle: int) -> bytes | None:
        if handle & 0xFF != BYTES_HANDLE_TAG:
            return None
        index = handle >> 8
        if index >= len(self.handles):
            return None
        return self.handles[index]

    def terminate(self, error: StateError) -> None:
        self.status = Status.STUCK if error.stuck else Status.FAILED
        self.error = error
        self.error_message = error.message

    def finish(self, result: Value | None) -> None:
        self.status = Status.RETURNED
        self.result = result
        self.frames.clear()

    def reject(self, message: str) -> None:
        self.status = Status.REJECTED
        self.error_message = message

    def constraint_terms(self) -> list[z3.BoolRef]:
        """Path condition plus the declared domain of every symbolic variable."""
        terms: list[z3.BoolRef] = []
        for name, domain in self.variables.items():
            if not domain.bounded:
                continue
            var = z3.BitVec(name, domain.bits)
            signed = domain.low is not None and domain.low < 0
            if domain.low is not None:
                low = z3.BitVecVal(domain.low, domain.bits)
                terms.append(var >= low if signed else z3.UGE(var, low))
            if domain.high is not None:
                high = z3.BitVecVal(domain.high, domain.bits)
                terms.append(var <= high if signed else z3.ULE(var, high))
        terms.extend(self.path_condition)
        return terms

    def describe_result(self) -> str | None:
        return render(self.result) if self.result is not None else None
