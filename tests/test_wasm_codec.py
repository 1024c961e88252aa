"""Tests for the WebAssembly decoder and the test assembler."""
import pytest

from wasm_sym.errors import WasmDecodeError
from wasm_sym.wasm.encoder import ModuleBuilder, assemble, encode_sleb, encode_uleb
from wasm_sym.wasm.opcodes import OpCode, mnemonic
from wasm_sym.wasm.parser import ExternalKind, FuncType, ValType, decode_expression, parse_module

I32, I64 = ValType.I32, ValType.I64


def test_leb128_encodings():
    assert encode_uleb(0) == b"\x00"
    assert encode_uleb(624485) == bytes([0xE5, 0x8E, 0x26])
    assert encode_sleb(-1) == b"\x7f"
    assert encode_sleb(-123456) == bytes([0xC0, 0xBB, 0x78])
    assert encode_sleb(64) == bytes([0xC0, 0x00])


def test_rejects_bad_magic_and_version():
    with pytest.raises(WasmDecodeError):
        parse_module(b"")
    with pytest.raises(WasmDecodeError, match="magic"):
        parse_module(b"\x7fELF\x01\x00\x00\x00")
    with pytest.raises(WasmDecodeError, match="version"):
        parse_module(b"\x00asm\x02\x00\x00\x00")


def test_decode_error_is_a_value_error():
    with pytest.raises(ValueError):
        parse_module(b"\x00asm\x01\x00\x00\x00\x01\x05\x01")


def test_rejects_truncated_section():
    wasm = ModuleBuilder()
    wasm.add_function("f", [], [I32], "i32.const 1")
    data = wasm.build()
    with pytest.raises(WasmDecodeError):
        parse_module(data[:-3])


def test_builder_round_trip_exports_imports_and_names():
    builder = ModuleBuilder()
    builder.import_function("env", "storage_get", [I64], [I64])
    builder.add_function("helper", [I32], [I32], "local.get 0", export=False)
    builder.add_function("test_double", [I32], [I32], """
        local.get 0
        call $helper
        i32.const 2
        i32.mul
    """)
    builder.add_memory(1)
    module = parse_module(builder.build())

    assert [imp.name for imp in module.imported_functions] == ["storage_get"]
    assert module.exported_function("test_double") == 2
    assert module.exported_function("helper") is None
    assert module.func_type(2) == FuncType((I32,), (I32,))
    assert module.function_label(1) == "helper"
    assert any(e.kind == ExternalKind.MEMORY for e in module.exports)
    assert module.memories[0].minimum == 1


def test_block_structure_is_resolved():
    body = assemble("""
        local.get 0
        if i32
          i32.const 1
        else
          i32.const 2
        end
        block
          br 0
        end
    """)
    instructions = decode_expression(body + b"\x0b")
    ops = [ins.opcode for ins in instructions]
    assert ops[:5] == [OpCode.LOCAL_GET, OpCode.IF, OpCode.I32_CONST, OpCode.ELSE, OpCode.I32_CONST]

    if_ins = instructions[1]
    assert instructions[if_ins.else_index].opcode == OpCode.ELSE
    assert instructions[if_ins.end_index].opcode == OpCode.END
    block = instructions[6]
    assert block.opcode == OpCode.BLOCK
    assert instructions[block.end_index].opcode == OpCode.END
    assert block.end_index == 8


def test_constants_are_signed_leb128():
    instructions = decode_expression(assemble("i32.const 0xFFFFFFFF\ni64.const -2") + b"\x0b")
    assert instructions[0].immediates[0] == -1
    assert instructions[1].immediates[0] == -2


def test_start_function_and_data_segments():
    builder = ModuleBuilder()
    builder.add_function("setup", [], [], "nop", export=False)
    builder.add_data(16, b"hello")
    builder.start = "setup"
    module = parse_module(builder.build())

    assert module.start == 0
    assert module.data[0].data == b"hello"
    assert module.data[0].mode == "active"


def test_mnemonics_round_trip_through_the_assembler():
    for opcode in (OpCode.I64_EXTEND_I32_U, OpCode.MEMORY_GROW, OpCode.BR_IF, OpCode.I32_WRAP_I64):
        text = mnemonic(opcode)
        args = " 0" if opcode in (OpCode.BR_IF, OpCode.MEMORY_GROW) else ""
        decoded = decode_expression(assemble(text + args) + b"\x0b")
        assert decoded[0].opcode == opcode


def test_assembler_rejects_unknown_instruction():
    with pytest.raises(ValueError, match="unknown instruction"):
        assemble("i32.frobnicate")


def test_rejects_exports_and_start_outside_the_index_space():
    header = b"\x00asm\x01\x00\x00\x00"
    with pytest.raises(WasmDecodeError, match="export 'f' references unknown func 0"):
        parse_module(header + b"\x07\x05\x01\x01f\x00\x00")
    with pytest.raises(WasmDecodeError, match="unknown memory 1"):
        parse_module(header + b"\x05\x03\x01\x00\x01" + b"\x07\x05\x01\x01m\x02\x01")
    with pytest.raises(WasmDecodeError, match="start function 3"):
        parse_module(header + b"\x08\x01\x03")
