"""WebAssembly decoding, encoding, module registry and manifest package."""

from __future__ import annotations

from .manifest import DEFAULT_MANIFEST_NAME, Manifest, load_manifest, parse_manifest
from .opcodes import OpCode
from .parser import (
    ExternalKind,
    FuncType,
    Function,
    Instruction,
    ValType,
    WasmModule,
    decode_expression,
    parse_module,
)
from .registry import ModuleHandle, ModuleRegistry, module_hash

__all__ = [
    "DEFAULT_MANIFEST_NAME",
    "ExternalKind",
    "FuncType",
    "Function",
    "Instruction",
    "Manifest",
    "ModuleHandle",
    "ModuleRegistry",
    "OpCode",
    "ValType",
    "WasmModule",
    "decode_expression",
    "load_manifest",
    "module_hash",
    "parse_manifest",
    "parse_module",
]
