"""Minimal WebAssembly encoder and line-oriented assembler.

Used to build contracts in tests and examples without a compiler toolchain::

    builder = ModuleBuilder()
    builder.add_function("add", [ValType.I32, ValType.I32], [ValType.I64], '''
        local.get 0
        i64.extend_i32_u
        local.get 1
        i64.extend_i32_u
        i64.add
    ''')
    wasm = builder.build()

One instruction per line; ``;;`` starts a comment. ``call $name`` refers to a
function by the name it was added under.
"""
from __future__ import annotations

import struct
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .opcodes import IMMEDIATES, LOAD_SHAPES, OPCODES_BY_MNEMONIC, PREFIX_FC, STORE_WIDTHS, OpCode
from .parser import WASM_MAGIC, WASM_VERSION, ExternalKind, ValType

__all__ = ["ModuleBuilder", "assemble", "encode_sleb", "encode_uleb"]

_VALTYPES_BY_NAME = {str(v): v for v in ValType}


def encode_uleb(value: int) -> bytes:
    if value < 0:
        raise ValueError("unsigned LEB128 value must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_sleb(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        done = (value == 0 and not byte & 0x40) or (value == -1 and byte & 0x40)
        out.append(byte if done else byte | 0x80)
        if done:
            return bytes(out)


def _name(text: str) -> bytes:
    raw = text.encode("utf-8")
    return encode_uleb(len(raw)) + raw


def _vector(items: list[bytes]) -> bytes:
    return encode_uleb(len(items)) + b"".join(items)


def _parse_int(token: str) -> int:
    return int(token.replace("_", ""), 0)


def _signed(value: int, bits: int) -> int:
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    if not -(1 << (bits - 1)) <= value < (1 << (bits - 1)):
        raise ValueError(f"constant {value} does not fit in {bits} bits")
    return value


_NATURAL_ALIGN = {op: {1: 0, 2: 1, 4: 2, 8: 3}[width] for op, (width, _, _) in LOAD_SHAPES.items()}
_NATURAL_ALIGN.update({op: {1: 0, 2: 1, 4: 2, 8: 3}[width] for op, width in STORE_WIDTHS.items()})
_NATURAL_ALIGN.update({OpCode.F32_LOAD: 2, OpCode.F64_LOAD: 3, OpCode.F32_STORE: 2, OpCode.F64_STORE: 3})


def _encode_opcode(opcode: OpCode) -> bytes:
    if opcode > 0xFF:
        return bytes([PREFIX_FC]) + encode_uleb(opcode & 0xFF)
    return bytes([opcode])


def _encode_blocktype(args: list[str]) -> bytes:
    if not args:
        return b"\x40"
    token = args[0]
    if token in _VALTYPES_BY_NAME:
        return bytes([_VALTYPES_BY_NAME[token]])
    if token.startswith("type="):
        return encode_sleb(_parse_int(token[len("type="):]))
    raise ValueError(f"invalid block type '{token}'")


def _resolve_index(token: str, names: Mapping[str, int]) -> int:
    if token.startswith("$"):
        try:
            return names[token[1:]]
        except KeyError:
            raise ValueError(f"unknown function name '{token}'") from None
    return _parse_int(token)


def assemble(text: str, names: Mapping[str, int] | None = None) -> bytes:
    """Assemble instruction lines into a function body expression (without the final ``end``)."""
    names = names or {}
    out = bytearray()
    for raw_line in text.splitlines():
        line = raw_line.split(";;", 1)[0].strip()
        if not line:
            continue
        mnemonic_text, *args = line.split()
        if mnemonic_text == "select" and args:
            out += bytes([OpCode.SELECT_T]) + _vector([bytes([_VALTYPES_BY_NAME[a]]) for a in args])
            continue
        try:
            opcode = OPCODES_BY_MNEMONIC[mnemonic_text]
        except KeyError:
            raise ValueError(f"unknown instruction '{mnemonic_text}'") from None
        out += _encode_opcode(opcode)
        kinds = IMMEDIATES.get(opcode, ())

        if kinds == ("blocktype",):
            out += _encode_blocktype(args)
        elif kinds == ("memarg",):
            options = dict(arg.split("=", 1) for arg in args)
            align = _parse_int(options.get("align", str(_NATURAL_ALIGN.get(opcode, 0))))
            offset = _parse_int(options.get("offset", "0"))
            out += encode_uleb(align) + encode_uleb(offset)
        elif kinds == ("br_table",):
            labels = [_parse_int(a) for a in args]
            if not labels:
                raise ValueError("br_table needs at least a default label")
            out += _vector([encode_uleb(label) for label in labels[:-1]]) + encode_uleb(labels[-1])
        elif kinds == ("i32",):
            out += encode_sleb(_signed(_parse_int(args[0]), 32))
        elif kinds == ("i64",):
            out += encode_sleb(_signed(_parse_int(args[0]), 64))
        elif kinds == ("f32",):
            out += struct.pack("<f", float(args[0]))
        elif kinds == ("f64",):
            out += struct.pack("<d", float(args[0]))
        elif kinds == ("reftype",):
            out += bytes([_VALTYPES_BY_NAME.get(args[0] if args else "funcref", ValType.FUNCREF)])
        elif opcode == OpCode.CALL_INDIRECT:
            out += encode_uleb(_parse_int(args[0])) + encode_uleb(_parse_int(args[1]) if len(args) > 1 else 0)
        else:
            index_args = iter(args)
            for kind in kinds:
                if kind == "zero":
                    out.append(0x00)
                elif kind == "u32":
                    out += encode_uleb(_resolve_index(next(index_args), names))
    return bytes(out)


@dataclass(slots=True)
class _PendingFunction:
    name: str
    type_index: int
    body: str | bytes
    locals: tuple[ValType, ...]
    export: str | None


@dataclass(slots=True)
class ModuleBuilder:
    types: list[tuple[tuple[ValType, ...], tuple[ValType, ...]]] = field(default_factory=list)
    imports: list[tuple[str, str, int]] = field(default_factory=list)
    functions: list[_PendingFunction] = field(default_factory=list)
    memory: tuple[int, int | None] | None = None
    memory_export: str | None = None
    globals: list[tuple[ValType, bool, int]] = field(default_factory=list)
    table: list[str | int] = field(default_factory=list)
    data: list[tuple[int, bytes]] = field(default_factory=list)
    names: dict[str, int] = field(default_factory=dict)
    start: str | None = None

    def add_type(self, params: Iterable[ValType], results: Iterable[ValType]) -> int:
        signature = (tuple(params), tuple(results))
        if signature in self.types:
            return self.types.index(signature)
        self.types.append(signature)
        return len(self.types) - 1

    def import_function(
        self, module: str, name: str, params: Iterable[ValType] = (), results: Iterable[ValType] = ()
    ) -> int:
        if self.functions:
            raise ValueError("imports must be declared before functions")
        self.imports.append((module, name, self.add_type(params, results)))
        index = len(self.imports) - 1
        self.names.setdefault(name, index)
        return index

    def add_function(
        self,
        name: str,
        params: Iterable[ValType],
        results: Iterable[ValType],
        body: str | bytes,
        *,
        locals: Iterable[ValType] = (),
        export: bool | str = True,
    ) -> int:
        export_name = name if export is True else (export or None)
        self.functions.append(
            _PendingFunction(name, self.add_type(params, results), body, tuple(locals), export_name)
        )
        index = len(self.imports) + len(self.functions) - 1
        self.names[name] = index
        return index

    def add_memory(self, minimum: int = 1, maximum: int | None = None, export: str | None = "memory") -> None:
        self.memory = (minimum, maximum)
        self.memory_export = export

    def add_global(self, valtype: ValType, value: int, *, mutable: bool = True) -> int:
        self.globals.append((valtype, mutable, value))
        return len(self.globals) - 1

    def add_data(self, offset: int, payload: bytes) -> None:
        if self.memory is None:
            self.add_memory()
        self.data.append((offset, payload))

    def add_table(self, functions: Iterable[str | int]) -> None:
        self.table = list(functions)

    def build(self) -> bytes:
        sections: list[tuple[int, bytes]] = []
        sections.append((1, _vector([
            b"\x60" + _vector([bytes([p]) for p in params]) + _vector([bytes([r]) for r in results])
            for params, results in self.types
        ])))
        if self.imports:
            sections.append((2, _vector([
                _name(module) + _name(name) + bytes([ExternalKind.FUNC]) + encode_uleb(type_index)
                for module, name, type_index in self.imports
            ])))
        sections.append((3, _vector([encode_uleb(fn.type_index) for fn in self.functions])))
        if self.table:
            sections.append((4, _vector([bytes([ValType.FUNCREF]) + b"\x00" + encode_uleb(len(self.table))])))
        if self.memory is not None:
            minimum, maximum = self.memory
            limits = b"\x00" + encode_uleb(minimum) if maximum is None else b"\x01" + encode_uleb(minimum) + encode_uleb(maximum)
            sections.append((5, _vector([limits])))
        if self.globals:
            entries = []
            for valtype, mutable, value in self.globals:
                const = OpCode.I64_CONST if valtype == ValType.I64 else OpCode.I32_CONST
                bits = 64 if valtype == ValType.I64 else 32
                entries.append(bytes([valtype, int(mutable), const]) + encode_sleb(_signed(value, bits)) + b"\x0b")
            sections.append((6, _vector(entries)))

        exports = [
            _name(fn.export) + bytes([ExternalKind.FUNC]) + encode_uleb(len(self.imports) + i)
            for i, fn in enumerate(self.functions)
            if fn.export
        ]
        if self.memory is not None and self.memory_export:
            exports.append(_name(self.memory_export) + bytes([ExternalKind.MEMORY]) + b"\x00")
        sections.append((7, _vector(exports)))
        if self.start is not None:
            sections.append((8, encode_uleb(_resolve_index(f"${self.start}", self.names))))

        if self.table:
            indices = [_resolve_index(f"${f}" if isinstance(f, str) else str(f), self.names) for f in self.table]
            segment = b"\x00" + bytes([OpCode.I32_CONST]) + encode_sleb(0) + b"\x0b"
            sections.append((9, _vector([segment + _vector([encode_uleb(i) for i in indices])])))

        bodies = []
        for fn in self.functions:
            code = fn.body if isinstance(fn.body, bytes) else assemble(fn.body, self.names)
            local_groups = [encode_uleb(1) + bytes([valtype]) for valtype in fn.locals]
            payload = _vector(local_groups) + code + b"\x0b"
            bodies.append(encode_uleb(len(payload)) + payload)
        sections.append((10, _vector(bodies)))

        if self.data:
            sections.append((11, _vector([
                b"\x00" + bytes([OpCode.I32_CONST]) + encode_sleb(_signed(offset, 32)) + b"\x0b"
                + encode_uleb(len(payload)) + payload
                for offset, payload in self.data
            ])))

        function_names = [
            encode_uleb(len(self.imports) + i) + _name(fn.name) for i, fn in enumerate(self.functions)
        ]
        name_payload = b"\x01" + encode_uleb(len(_vector(function_names))) + _vector(function_names)
        sections.append((0, _name("name") + name_payload))

        out = bytearray(WASM_MAGIC + WASM_VERSION.to_bytes(4, "little"))
        for section_id, payload in sections:
            out += bytes([section_id]) + encode_uleb(len(payload)) + payload
        return bytes(out)
