"""Host function bridge: the fixed import surface contracts run against.

Contracts import these functions from module ``env``. Each one is implemented
once over :mod:`wasm_sym.engine.values`, so the same handler serves concrete
and symbolic states; only the points where a value must be concrete differ.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import DeploymentError, InvocationError, NonConcreteValue, UnknownModule
from ..wasm.parser import FuncType, ValType
from .state import FrameKind, HostCallRecord, MachineState
from .values import Concrete, Value, convert, render, truth

if TYPE_CHECKING:
    from ..wasm.registry import ModuleRegistry
    from .interpreter import Interpreter
    from .solver import ConstraintManager

__all__ = ["HOST_FUNCTIONS", "HOST_MODULE", "HostBridge", "invoke_result"]

logger = logging.getLogger(__name__)

HOST_MODULE = "env"

_I32, _I64 = ValType.I32, ValType.I64

HOST_FUNCTIONS: dict[str, FuncType] = {
    "create_contract": FuncType((_I64, _I64), (_I64,)),
    "storage_get": FuncType((_I64,), (_I64,)),
    "storage_set": FuncType((_I64, _I64), ()),
    "storage_has": FuncType((_I64,), (_I32,)),
    "invoke": FuncType((_I64, _I32, _I32, _I32, _I32), (_I64,)),
    "current_address": FuncType((), (_I64,)),
    "assume": FuncType((_I32,), ()),
    "log": FuncType((_I32, _I32), ()),
}

MAX_NAME_LENGTH = 256
MAX_INVOKE_ARGS = 64


class HostBridge:
    """Implements every import in :data:`HOST_FUNCTIONS`.

    The bridge only reaches the rest of the machine through the registry (to
    resolve deployed modules) and the interpreter (to instantiate modules and
    push call frames).
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        interpreter: Interpreter,
        solver: ConstraintManager | None = None,
    ) -> None:
        self.registry = registry
        self.interpreter = interpreter
        self.solver = solver

    @staticmethod
    def check_import(module: str, name: str, func_type: FuncType) -> None:
        if module != HOST_MODULE or name not in HOST_FUNCTIONS:
            raise DeploymentError(f"unknown import {module}.{name}")
        expected = HOST_FUNCTIONS[name]
        if func_type != expected:
            raise DeploymentError(f"import {module}.{name} has signature {func_type}, expected {expected}")

    def call(self, state: MachineState, name: str, args: list[Value], offset: int = -1) -> list[MachineState]:
        record = HostCallRecord(name=name, address=state.current_address, args=tuple(render(a, 48) for a in args))
        state.host_calls.append(record)
        handler = getattr(self, f"_host_{name}")
        logger.debug("host call %s", record)
        return handler(state, record, args, offset)

    def _return(self, state: MachineState, record: HostCallRecord, value: Value | None) -> list[MachineState]:
        if value is not None:
            state.push(value)
            record.result = render(value, 48)
        return [state]

    def _concrete(self, state: MachineState, value: Value, what: str, reason: str, offset: int) -> int:
        if isinstance(value, Concrete):
            return value.value
        if self.solver is not None:
            try:
                return self.solver.concretize(state, value, reason=reason)
            except NonConcreteValue as exc:
                raise NonConcreteValue(f"{what}: {exc.message}", offset=offset, reason=reason) from None
        raise NonConcreteValue(f"{what} is symbolic", offset=offset, reason=reason)

    def _host_create_contract(
        self, state: MachineState, record: HostCallRecord, args: list[Value], offset: int
    ) -> list[MachineState]:
        address = self._concrete(state, args[0], "deployment address", "NonConcreteAddress", offset)
        handle = self._concrete(state, args[1], "module hash handle", "NonConcreteAddress", offset)
        digest = state.handle_bytes(handle)
        if digest is None:
            raise DeploymentError(f"invalid module hash handle {handle:#x}", offset=offset)
        if address in state.instances:
            raise DeploymentError(f"address {address:#x} is already occupied", offset=offset)
        try:
            self.registry.resolve(digest)
        except UnknownModule as exc:
            raise DeploymentError(str(exc), offset=offset) from None
        # The result is pushed before any start function frame goes on top.
        self._return(state, record, Concrete(address, 64))
        self.interpreter.deploy(state, address, digest)
        logger.debug("deployed %s at %#x", digest.hex()[:16], address)
        return [state]

    def _host_storage_get(
        self, state: MachineState, record: HostCallRecord, args: list[Value], offset: int
    ) -> list[MachineState]:
        value, _ = state.partition().read(args[0])
        return self._return(state, record, value)

    def _host_storage_has(
        self, state: MachineState, record: HostCallRecord, args: list[Value], offset: int
    ) -> list[MachineState]:
        _, present = state.partition().read(args[0])
        return self._return(state, record, present)

    def _host_storage_set(
        self, state: MachineState, record: HostCallRecord, args: list[Value], offset: int
    ) -> list[MachineState]:
        state.partition().write(args[0], args[1])
        return [state]

    def _host_current_address(
        self, state: MachineState, record: HostCallRecord, args: list[Value], offset: int
    ) -> list[MachineState]:
        return self._return(state, record, Concrete(state.current_address, 64))

    def _host_assume(
        self, state: MachineState, record: HostCallRecord, args: list[Value], offset: int
    ) -> list[MachineState]:
        flag = truth(args[0])
        if flag is True:
            return [state]
        if flag is False:
            state.reject(f"assumption violated at offset {offset}")
            return [state]
        # One-child split so the explorer checks the constrained path.
        return [state.branch(flag)]

    def _host_log(
        self, state: MachineState, record: HostCallRecord, args: list[Value], offset: int
    ) -> list[MachineState]:
        pointer = self._concrete(state, args[0], "log pointer", "SymbolicAddress", offset)
        length = self._concrete(state, args[1], "log length", "SymbolicAddress", offset)
        memory = state.instance.memory
        if memory is None:
            record.result = "<no memory>"
            return [state]
        memory.check_bounds(pointer, length)
        if memory.has_symbolic(pointer, length):
            record.result = "<symbolic bytes>"
        else:
            record.result = repr(memory.read_bytes(pointer, length).decode("utf-8", errors="replace"))
        logger.debug("contract %#x log: %s", state.current_address, record.result)
        return [state]

    def _host_invoke(
        self, state: MachineState, record: HostCallRecord, args: list[Value], offset: int
    ) -> list[MachineState]:
        address = self._concrete(state, args[0], "invocation address", "NonConcreteAddress", offset)
        name_ptr = self._concrete(state, args[1], "function name pointer", "SymbolicAddress", offset)
        name_len = self._concrete(state, args[2], "function name length", "SymbolicAddress", offset)
        args_ptr = self._concrete(state, args[3], "argument pointer", "SymbolicAddress", offset)
        nargs = self._concrete(state, args[4], "argument count", "SymbolicAddress", offset)
        if name_len > MAX_NAME_LENGTH or nargs > MAX_INVOKE_ARGS:
            raise InvocationError(f"invoke arguments out of range (name {name_len}, args {nargs})", offset=offset)

        memory = state.instance.memory
        if memory is None:
            raise InvocationError("caller has no linear memory to pass arguments in", offset=offset)
        try:
            function_name = memory.read_bytes(name_ptr, name_len).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvocationError(f"function name is not UTF-8: {exc}", offset=offset) from None
        call_args = [memory.load(args_ptr + 8 * i, 8, 64, False) for i in range(nargs)]

        target = state.instances.get(address)
        if target is None:
            raise InvocationError(f"no contract deployed at {address:#x}", offset=offset)
        module = self.registry.resolve(target.module_hash)
        func_index = module.exported_function(function_name)
        if func_index is None:
            raise InvocationError(f"contract at {address:#x} has no export '{function_name}'", offset=offset)
        if func_index < len(module.imported_functions):
            raise InvocationError(f"export '{function_name}' is a host import", offset=offset)
        func_type = module.func_type(func_index)
        if len(func_type.params) != nargs:
            raise InvocationError(
                f"'{function_name}' takes {len(func_type.params)} argument(s), got {nargs}", offset=offset
            )
        if any(r not in (_I32, _I64) for r in func_type.results):
            raise InvocationError(f"'{function_name}' returns non-integer results", offset=offset)
        converted: list[Value] = []
        for param, value in zip(func_type.params, call_args):
            if param == _I32:
                converted.append(convert("wrap", value))
            elif param == _I64:
                converted.append(value)
            else:
                raise InvocationError(f"'{function_name}' takes a {param} parameter", offset=offset)

        record.result = f"-> {function_name}@{address:#x}"
        self.interpreter.push_call(state, address, func_index, converted, kind=FrameKind.INVOKE)
        return [state]


def invoke_result(results: list[Value]) -> Value:
    """Widen a callee's results to the single i64 ``invoke`` returns."""
    if not results:
        return Concrete(0, 64)
    value = results[0]
    if value.bits == 32:
        return convert("extend_u", value)
    return value
