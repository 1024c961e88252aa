"""WebAssembly binary decoder."""
from __future__ import annotations

import struct
from collections import Counter
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from ..errors import WasmDecodeError
from .opcodes import IMMEDIATES, PREFIX_FC, OpCode

WASM_MAGIC = b"\x00asm"
WASM_VERSION = 1
MAX_LOCALS = 50_000
MAX_VECTOR_LENGTH = 1_000_000


class ValType(IntEnum):
    I32 = 0x7F
    I64 = 0x7E
    F32 = 0x7D
    F64 = 0x7C
    V128 = 0x7B
    FUNCREF = 0x70
    EXTERNREF = 0x6F

    def __str__(self) -> str:
        return self.name.lower()


VALTYPE_BITS: dict[ValType, int] = {ValType.I32: 32, ValType.I64: 64, ValType.F32: 32, ValType.F64: 64}


class ExternalKind(IntEnum):
    FUNC = 0x00
    TABLE = 0x01
    MEMORY = 0x02
    GLOBAL = 0x03


@dataclass(slots=True, frozen=True)
class FuncType:
    params: tuple[ValType, ...] = ()
    results: tuple[ValType, ...] = ()

    def __str__(self) -> str:
        params = ", ".join(str(p) for p in self.params)
        results = ", ".join(str(r) for r in self.results)
        return f"({params}) -> ({results})"


@dataclass(slots=True, frozen=True)
class Limits:
    minimum: int
    maximum: int | None = None


@dataclass(slots=True, frozen=True)
class TableType:
    reftype: ValType
    limits: Limits


@dataclass(slots=True, frozen=True)
class Import:
    module: str
    name: str
    kind: ExternalKind
    desc: Any


@dataclass(slots=True, frozen=True)
class Export:
    name: str
    kind: ExternalKind
    index: int


@dataclass(slots=True, frozen=True)
class ConstExpr:
    opcode: OpCode
    value: int | None


@dataclass(slots=True, frozen=True)
class Global:
    valtype: ValType
    mutable: bool
    init: ConstExpr


@dataclass(slots=True)
class Instruction:
    opcode: OpCode
    offset: int
    immediates: tuple[Any, ...] = ()
    else_index: int = -1
    end_index: int = -1


@dataclass(slots=True)
class Function:
    type_index: int
    locals: tuple[ValType, ...]
    body: list[Instruction]


@dataclass(slots=True, frozen=True)
class ElementSegment:
    mode: str
    table: int
    offset: ConstExpr | None
    functions: tuple[int | None, ...]


@dataclass(slots=True, frozen=True)
class DataSegment:
    mode: str
    memory: int
    offset: ConstExpr | None
    data: bytes


@dataclass(slots=True)
class WasmModule:
    types: list[FuncType] = field(default_factory=list)
    imports: list[Import] = field(default_factory=list)
    functions: list[Function] = field(default_factory=list)
    tables: list[TableType] = field(default_factory=list)
    memories: list[Limits] = field(default_factory=list)
    globals: list[Global] = field(default_factory=list)
    exports: list[Export] = field(default_factory=list)
    start: int | None = None
    elements: list[ElementSegment] = field(default_factory=list)
    data: list[DataSegment] = field(default_factory=list)
    custom_sections: dict[str, bytes] = field(default_factory=dict)
    function_names: dict[int, str] = field(default_factory=dict)

    @property
    def imported_functions(self) -> list[Import]:
        return [imp for imp in self.imports if imp.kind == ExternalKind.FUNC]

    def func_type(self, func_index: int) -> FuncType:
        """Signature of a function in the module's combined (imports first) index space."""
        imported = self.imported_functions
        if func_index < len(imported):
            return self.types[imported[func_index].desc]
        local_index = func_index - len(imported)
        if not 0 <= local_index < len(self.functions):
            raise IndexError(f"function index {func_index} out of range")
        return self.types[self.functions[local_index].type_index]

    def exported_function(self, name: str) -> int | None:
        for export in self.exports:
            if export.kind == ExternalKind.FUNC and export.name == name:
                return export.index
        return None

    def function_label(self, func_index: int) -> str:
        name = self.function_names.get(func_index)
        if name is None:
            for export in self.exports:
                if export.kind == ExternalKind.FUNC and export.index == func_index:
                    name = export.name
                    break
        return name or f"func[{func_index}]"

    def block_arity(self, blocktype: Any) -> tuple[int, int]:
        """Return ``(params, results)`` for a block type immediate."""
        if blocktype is None:
            return 0, 0
        if isinstance(blocktype, ValType):
            return 0, 1
        func_type = self.types[blocktype]
        return len(func_type.params), len(func_type.results)


class _BufferReader:
    def __init__(self, data: bytes, offset: int = 0, end: int | None = None) -> None:
        self._data = data
        self._offset = offset
        self._end = len(data) if end is None else end

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return self._end - self._offset

    def read_bytes(self, length: int) -> bytes:
        if length < 0:
            raise WasmDecodeError("negative length")
        end = self._offset + length
        if end > self._end:
            raise WasmDecodeError(f"unexpected end of data at offset {self._offset}")
        value = self._data[self._offset : end]
        self._offset = end
        return value

    def read_u8(self) -> int:
        return self.read_bytes(1)[0]

    def peek_u8(self) -> int:
        if self._offset >= self._end:
            raise WasmDecodeError(f"unexpected end of data at offset {self._offset}")
        return self._data[self._offset]

    def read_uleb(self, max_bits: int = 32) -> int:
        result = 0
        shift = 0
        while True:
            byte = self.read_u8()
            result |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                break
            if shift >= -(-max_bits // 7) * 7:
                raise WasmDecodeError("LEB128 integer too long")
        if result >> max_bits:
            raise WasmDecodeError(f"LEB128 integer exceeds {max_bits} bits")
        return result

    def read_sleb(self, bits: int) -> int:
        result = 0
        shift = 0
        while True:
            byte = self.read_u8()
            result |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                break
            if shift >= -(-bits // 7) * 7:
                raise WasmDecodeError("LEB128 integer too long")
        if byte & 0x40:
            result -= 1 << shift
        if not -(1 << (bits - 1)) <= result < (1 << (bits - 1)):
            raise WasmDecodeError(f"signed LEB128 integer exceeds {bits} bits")
        return result

    def read_vec_length(self) -> int:
        length = self.read_uleb()
        if length > MAX_VECTOR_LENGTH:
            raise WasmDecodeError(f"vector length {length} too large")
        return length

    def read_name(self) -> str:
        raw = self.read_bytes(self.read_uleb())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WasmDecodeError(f"invalid UTF-8 name at offset {self._offset}") from exc

    def read_valtype(self) -> ValType:
        raw = self.read_u8()
        try:
            return ValType(raw)
        except ValueError as exc:
            raise WasmDecodeError(f"invalid value type 0x{raw:02X}") from exc

    def read_limits(self) -> Limits:
        flag = self.read_u8()
        if flag == 0x00:
            return Limits(self.read_uleb())
        if flag == 0x01:
            minimum = self.read_uleb()
            return Limits(minimum, self.read_uleb())
        raise WasmDecodeError(f"invalid limits flag 0x{flag:02X}")


def _read_blocktype(reader: _BufferReader) -> Any:
    head = reader.peek_u8()
    if head == 0x40:
        reader.read_u8()
        return None
    if head in {member.value for member in ValType}:
        return reader.read_valtype()
    index = reader.read_sleb(33)
    if index < 0:
        raise WasmDecodeError(f"invalid block type index {index}")
    return index


def _read_opcode(reader: _BufferReader) -> OpCode:
    offset = reader.offset
    raw = reader.read_u8()
    if raw == PREFIX_FC:
        raw = (PREFIX_FC << 8) | reader.read_uleb()
    try:
        return OpCode(raw)
    except ValueError as exc:
        raise WasmDecodeError(f"unknown opcode 0x{raw:02X} at offset {offset}") from exc


def _read_immediates(reader: _BufferReader, opcode: OpCode) -> tuple[Any, ...]:
    values: list[Any] = []
    for kind in IMMEDIATES.get(opcode, ()):
        if kind == "blocktype":
            values.append(_read_blocktype(reader))
        elif kind == "u32":
            values.append(reader.read_uleb())
        elif kind == "i32":
            values.append(reader.read_sleb(32))
        elif kind == "i64":
            values.append(reader.read_sleb(64))
        elif kind == "f32":
            values.append(struct.unpack("<I", reader.read_bytes(4))[0])
        elif kind == "f64":
            values.append(struct.unpack("<Q", reader.read_bytes(8))[0])
        elif kind == "memarg":
            align = reader.read_uleb()
            values.append((align, reader.read_uleb()))
        elif kind == "zero":
            if reader.read_u8() != 0x00:
                raise WasmDecodeError(f"expected reserved zero byte for {opcode.name}")
        elif kind == "br_table":
            labels = tuple(reader.read_uleb() for _ in range(reader.read_vec_length()))
            values.append((labels, reader.read_uleb()))
        elif kind == "valtypes":
            values.append(tuple(reader.read_valtype() for _ in range(reader.read_vec_length())))
        elif kind == "reftype":
            values.append(reader.read_valtype())
        else:  # pragma: no cover - table is static
            raise WasmDecodeError(f"unhandled immediate kind {kind}")
    return tuple(values)


def decode_expression(data: bytes, offset: int = 0, end: int | None = None) -> list[Instruction]:
    """Decode an instruction sequence terminated by its outermost ``end``.

    Structured instructions get ``else_index``/``end_index`` filled in so the
    interpreter never has to scan for matching delimiters.
    """
    reader = _BufferReader(data, offset, end)
    return _decode_body(reader)


def _decode_body(reader: _BufferReader) -> list[Instruction]:
    instructions: list[Instruction] = []
    open_blocks: list[int] = []
    while True:
        offset = reader.offset
        opcode = _read_opcode(reader)
        instruction = Instruction(opcode=opcode, offset=offset, immediates=_read_immediates(reader, opcode))
        index = len(instructions)
        instructions.append(instruction)

        if opcode in (OpCode.BLOCK, OpCode.LOOP, OpCode.IF):
            open_blocks.append(index)
        elif opcode == OpCode.ELSE:
            if not open_blocks or instructions[open_blocks[-1]].opcode != OpCode.IF:
                raise WasmDecodeError(f"else without matching if at offset {offset}")
            opener = instructions[open_blocks[-1]]
            if opener.else_index != -1:
                raise WasmDecodeError(f"duplicate else at offset {offset}")
            opener.else_index = index
        elif opcode == OpCode.END:
            if not open_blocks:
                return instructions
            opener = instructions[open_blocks.pop()]
            opener.end_index = index
            if opener.else_index != -1:
                instructions[opener.else_index].end_index = index


def _read_const_expr(reader: _BufferReader) -> ConstExpr:
    body = _decode_body(reader)
    if len(body) != 2:
        raise WasmDecodeError("unsupported constant expression")
    head = body[0]
    if head.opcode in (OpCode.I32_CONST, OpCode.I64_CONST, OpCode.F32_CONST, OpCode.F64_CONST):
        return ConstExpr(head.opcode, head.immediates[0])
    if head.opcode in (OpCode.GLOBAL_GET, OpCode.REF_FUNC):
        return ConstExpr(head.opcode, head.immediates[0])
    if head.opcode == OpCode.REF_NULL:
        return ConstExpr(head.opcode, None)
    raise WasmDecodeError(f"unsupported constant expression opcode {head.opcode.name}")


def _parse_import(reader: _BufferReader) -> Import:
    module_name = reader.read_name()
    name = reader.read_name()
    kind = ExternalKind(reader.read_u8())
    desc: Any
    if kind == ExternalKind.FUNC:
        desc = reader.read_uleb()
    elif kind == ExternalKind.TABLE:
        reftype = reader.read_valtype()
        desc = TableType(reftype, reader.read_limits())
    elif kind == ExternalKind.MEMORY:
        desc = reader.read_limits()
    else:
        valtype = reader.read_valtype()
        desc = (valtype, bool(reader.read_u8()))
    return Import(module=module_name, name=name, kind=kind, desc=desc)


def _parse_element(reader: _BufferReader) -> ElementSegment:
    flags = reader.read_uleb()
    if flags > 7:
        raise WasmDecodeError(f"invalid element segment flags {flags}")
    table = 0
    offset: ConstExpr | None = None
    mode = "active"
    if flags & 0x01:
        mode = "declarative" if flags & 0x02 else "passive"
    elif flags & 0x02:
        table = reader.read_uleb()
    if mode == "active":
        offset = _read_const_expr(reader)

    functions: list[int | None] = []
    uses_expressions = bool(flags & 0x04)
    if flags & 0x03:
        # element kind byte or reference type
        kind_byte = reader.read_u8()
        if not uses_expressions and kind_byte != 0x00:
            raise WasmDecodeError(f"unsupported element kind 0x{kind_byte:02X}")
    count = reader.read_vec_length()
    for _ in range(count):
        if uses_expressions:
            expr = _read_const_expr(reader)
            functions.append(expr.value if expr.opcode == OpCode.REF_FUNC else None)
        else:
            functions.append(reader.read_uleb())
    return ElementSegment(mode=mode, table=table, offset=offset, functions=tuple(functions))


def _parse_data(reader: _BufferReader) -> DataSegment:
    flags = reader.read_uleb()
    if flags == 0:
        offset = _read_const_expr(reader)
        return DataSegment("active", 0, offset, reader.read_bytes(reader.read_uleb()))
    if flags == 1:
        return DataSegment("passive", 0, None, reader.read_bytes(reader.read_uleb()))
    if flags == 2:
        memory = reader.read_uleb()
        offset = _read_const_expr(reader)
        return DataSegment("active", memory, offset, reader.read_bytes(reader.read_uleb()))
    raise WasmDecodeError(f"invalid data segment flags {flags}")


def _parse_code(reader: _BufferReader, type_index: int) -> Function:
    size = reader.read_uleb()
    end = reader.offset + size
    if end > reader.offset + reader.remaining:
        raise WasmDecodeError("function body exceeds section")
    body_reader = _BufferReader(reader._data, reader.offset, end)
    local_types: list[ValType] = []
    for _ in range(body_reader.read_vec_length()):
        count = body_reader.read_uleb()
        valtype = body_reader.read_valtype()
        if len(local_types) + count > MAX_LOCALS:
            raise WasmDecodeError(f"too many locals (> {MAX_LOCALS})")
        local_types.extend([valtype] * count)
    body = _decode_body(body_reader)
    if body_reader.remaining != 0:
        raise WasmDecodeError("trailing bytes after function body")
    reader.read_bytes(size)
    return Function(type_index=type_index, locals=tuple(local_types), body=body)


def _parse_name_section(payload: bytes) -> dict[int, str]:
    names: dict[int, str] = {}
    reader = _BufferReader(payload)
    while reader.remaining:
        subsection = reader.read_u8()
        size = reader.read_uleb()
        chunk = _BufferReader(reader.read_bytes(size))
        if subsection != 1:
            continue
        for _ in range(chunk.read_vec_length()):
            index = chunk.read_uleb()
            names[index] = chunk.read_name()
    return names


def parse_module(data: bytes) -> WasmModule:
    """Decode a WebAssembly binary module."""
    if not data:
        raise WasmDecodeError("empty module")
    if data[:4] != WASM_MAGIC:
        raise WasmDecodeError("invalid magic: not a WebAssembly binary")
    if len(data) < 8 or int.from_bytes(data[4:8], "little") != WASM_VERSION:
        raise WasmDecodeError("unsupported WebAssembly version")

    module = WasmModule()
    reader = _BufferReader(data, 8)
    function_types: list[int] = []
    last_section = 0
    while reader.remaining:
        section_id = reader.read_u8()
        size = reader.read_uleb()
        start = reader.offset
        payload_end = start + size
        if payload_end > len(data):
            raise WasmDecodeError(f"section {section_id} exceeds module size")
        section = _BufferReader(data, start, payload_end)

        if section_id != 0:
            # data count (12) is ordered between import and code sections
            order = 9.5 if section_id == 12 else section_id
            if order <= last_section:
                raise WasmDecodeError(f"section {section_id} out of order")
            last_section = order

        if section_id == 0:
            name = section.read_name()
            payload = section.read_bytes(section.remaining)
            module.custom_sections[name] = payload
            if name == "name":
                try:
                    module.function_names = _parse_name_section(payload)
                except WasmDecodeError:
                    module.function_names = {}
        elif section_id == 1:
            for _ in range(section.read_vec_length()):
                if section.read_u8() != 0x60:
                    raise WasmDecodeError("invalid function type form")
                params = tuple(section.read_valtype() for _ in range(section.read_vec_length()))
                results = tuple(section.read_valtype() for _ in range(section.read_vec_length()))
                module.types.append(FuncType(params, results))
        elif section_id == 2:
            module.imports = [_parse_import(section) for _ in range(section.read_vec_length())]
        elif section_id == 3:
            function_types = [section.read_uleb() for _ in range(section.read_vec_length())]
        elif section_id == 4:
            for _ in range(section.read_vec_length()):
                reftype = section.read_valtype()
                module.tables.append(TableType(reftype, section.read_limits()))
        elif section_id == 5:
            module.memories = [section.read_limits() for _ in range(section.read_vec_length())]
        elif section_id == 6:
            for _ in range(section.read_vec_length()):
                valtype = section.read_valtype()
                mutable = bool(section.read_u8())
                module.globals.append(Global(valtype, mutable, _read_const_expr(section)))
        elif section_id == 7:
            for _ in range(section.read_vec_length()):
                name = section.read_name()
                kind = ExternalKind(section.read_u8())
                module.exports.append(Export(name, kind, section.read_uleb()))
        elif section_id == 8:
            module.start = section.read_uleb()
        elif section_id == 9:
            module.elements = [_parse_element(section) for _ in range(section.read_vec_length())]
        elif section_id == 10:
            count = section.read_vec_length()
            if count != len(function_types):
                raise WasmDecodeError(
                    f"function and code section counts differ ({len(function_types)} != {count})"
                )
            module.functions = [_parse_code(section, type_index) for type_index in function_types]
        elif section_id == 11:
            module.data = [_parse_data(section) for _ in range(section.read_vec_length())]
        elif section_id == 12:
            section.read_uleb()
        else:
            raise WasmDecodeError(f"unknown section id {section_id}")

        if section.remaining != 0:
            raise WasmDecodeError(f"section {section_id} size mismatch")
        reader.read_bytes(size)

    if function_types and not module.functions:
        raise WasmDecodeError("function section without code section")
    for index, type_index in enumerate(function_types):
        if type_index >= len(module.types):
            raise WasmDecodeError(f"function {index} references unknown type {type_index}")
    for imp in module.imported_functions:
        if imp.desc >= len(module.types):
            raise WasmDecodeError(f"import {imp.module}.{imp.name} references unknown type {imp.desc}")

    imported = Counter(imp.kind for imp in module.imports)
    defined = {
        ExternalKind.FUNC: len(module.functions),
        ExternalKind.TABLE: len(module.tables),
        ExternalKind.MEMORY: len(module.memories),
        ExternalKind.GLOBAL: len(module.globals),
    }
    for export in module.exports:
        if export.index >= imported[export.kind] + defined[export.kind]:
            raise WasmDecodeError(
                f"export '{export.name}' references unknown {export.kind.name.lower()} {export.index}"
            )
    if module.start is not None and module.start >= imported[ExternalKind.FUNC] + defined[ExternalKind.FUNC]:
        raise WasmDecodeError(f"start function {module.start} does not exist")
    return module
