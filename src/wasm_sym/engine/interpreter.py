"""Dual-mode WebAssembly interpreter.

One instruction semantics serves both evaluation modes: operands are
:mod:`wasm_sym.engine.values` and every opcode handler dispatches on them.
A handler returns the successor states of the instruction; more than one
successor means the instruction forked on a symbolic condition and each
child carries exactly one new path constraint.
"""
from __future__ import annotations

import logging
import time

import z3

from ..config import EngineConfig
from ..errors import BudgetExceeded, DeploymentError, NonConcreteValue, StateError, Trap, UnsupportedInstruction
from ..wasm.opcodes import FLOAT_OPCODES, LOAD_SHAPES, STORE_WIDTHS, OpCode, mnemonic
from ..wasm.parser import VALTYPE_BITS, ConstExpr, ExternalKind, Instruction, ValType, WasmModule
from ..wasm.registry import ModuleRegistry
from .host import HostBridge, invoke_result
from .memory import LinearMemory
from .solver import ConstraintManager
from .state import NULL_REF, Frame, FrameKind, Instance, Label, MachineState, Mode
from .values import (
    BINARY_OPS,
    COMPARE_OPS,
    Concrete,
    Truth,
    Value,
    binary,
    compare,
    convert,
    is_zero,
    overflow_condition,
    select,
    signed_division_overflow,
    truth,
    unary,
)

__all__ = ["Interpreter"]

logger = logging.getLogger(__name__)

_BINARY: dict[OpCode, str] = {}
_COMPARE: dict[OpCode, str] = {}
_UNARY: dict[OpCode, str] = {}
for _op in OpCode:
    _head, _, _tail = _op.name.lower().partition("_")
    if _head not in ("i32", "i64"):
        continue
    if _tail in BINARY_OPS:
        _BINARY[_op] = _tail
    elif _tail in COMPARE_OPS:
        _COMPARE[_op] = _tail
    elif _tail in ("eqz", "clz", "ctz", "popcnt"):
        _UNARY[_op] = _tail
del _op, _head, _tail

_CONVERSIONS: dict[OpCode, str] = {
    OpCode.I32_WRAP_I64: "wrap",
    OpCode.I64_EXTEND_I32_S: "extend_s",
    OpCode.I64_EXTEND_I32_U: "extend_u",
    OpCode.I32_EXTEND8_S: "extend8_s",
    OpCode.I32_EXTEND16_S: "extend16_s",
    OpCode.I64_EXTEND8_S: "extend8_s",
    OpCode.I64_EXTEND16_S: "extend16_s",
    OpCode.I64_EXTEND32_S: "extend32_s",
}

_DIVISIONS = frozenset({"div_s", "div_u", "rem_s", "rem_u"})
_CHECKED = frozenset({"add", "sub", "mul"})
_MAX_TABLE_SIZE = 10_000_000


def _zero(valtype: ValType) -> Value:
    if valtype in (ValType.FUNCREF, ValType.EXTERNREF):
        return Concrete(NULL_REF, 32)
    return Concrete(0, VALTYPE_BITS.get(valtype, 32))


class Interpreter:
    """Executes machine states instruction by instruction.

    The interpreter is stateless apart from its collaborators: the module
    registry, the host bridge it owns and, for symbolic runs, the constraint
    manager used to concretize addresses.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        config: EngineConfig | None = None,
        solver: ConstraintManager | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or EngineConfig()
        self.solver = solver
        self.host = HostBridge(registry, self, solver)
        self.deadline: float | None = None

    # instantiation and calls

    def deploy(self, state: MachineState, address: int, module_hash: bytes) -> Instance:
        """Instantiate a registered module at *address*.

        A start function, if any, is pushed as a frame and runs next.
        """
        if address in state.instances:
            raise DeploymentError(f"address {address:#x} is already occupied")
        module = self.registry.resolve(module_hash)
        for imp in module.imports:
            if imp.kind != ExternalKind.FUNC:
                raise DeploymentError(f"unsupported {imp.kind.name.lower()} import {imp.module}.{imp.name}")
            HostBridge.check_import(imp.module, imp.name, module.types[imp.desc])

        instance = Instance(address=address, module_hash=module_hash)
        if module.memories:
            limits = module.memories[0]
            instance.memory = LinearMemory(limits.minimum, limits.maximum)
        for glob in module.globals:
            instance.globals.append(self._const_value(glob.init, glob.valtype, instance))
        if module.tables:
            instance.table = [None] * module.tables[0].limits.minimum

        for index, segment in enumerate(module.elements):
            if segment.mode == "passive":
                continue
            instance.dropped_elements.add(index)
            if segment.mode != "active" or segment.offset is None:
                continue
            start = self._const_value(segment.offset, ValType.I32, instance).value
            if start + len(segment.functions) > len(instance.table):
                raise DeploymentError(f"element segment {index} does not fit the table")
            instance.table[start : start + len(segment.functions)] = list(segment.functions)

        for index, segment in enumerate(module.data):
            if segment.mode != "active" or segment.offset is None:
                continue
            if instance.memory is None:
                raise DeploymentError(f"data segment {index} targets a module without memory")
            start = self._const_value(segment.offset, ValType.I32, instance).value
            try:
                instance.memory.write_bytes(start, segment.data)
            except Trap as exc:
                raise DeploymentError(f"data segment {index}: {exc.message}") from None
            instance.dropped_data.add(index)

        state.instances[address] = instance
        state.partition(address)
        if module.start is not None:
            self.push_call(state, address, module.start, [], kind=FrameKind.START)
        return instance

    def _const_value(self, expr: ConstExpr, valtype: ValType, instance: Instance) -> Concrete:
        if expr.opcode == OpCode.GLOBAL_GET:
            if expr.value is None or expr.value >= len(instance.globals):
                raise DeploymentError(f"constant expression reads undefined global {expr.value}")
            value = instance.globals[expr.value]
            if not isinstance(value, Concrete):
                raise DeploymentError("constant expression reads a symbolic global")
            return value
        if expr.opcode == OpCode.REF_NULL:
            return Concrete(NULL_REF, 32)
        if expr.opcode == OpCode.REF_FUNC:
            return Concrete(expr.value or 0, 32)
        return Concrete(expr.value or 0, VALTYPE_BITS.get(valtype, 32))

    def push_call(
        self,
        state: MachineState,
        address: int,
        func_index: int,
        args: list[Value],
        kind: FrameKind = FrameKind.CALL,
    ) -> Frame:
        instance = state.instances[address]
        module = self.registry.resolve(instance.module_hash)
        imported = len(module.imported_functions)
        if func_index < imported or func_index - imported >= len(module.functions):
            raise Trap(f"cannot call function {func_index} directly")
        if len(state.frames) >= self.config.max_call_depth:
            raise BudgetExceeded(f"call depth limit of {self.config.max_call_depth} reached")
        function = module.functions[func_index - imported]
        func_type = module.types[function.type_index]
        frame = Frame(
            address=address,
            func_index=func_index,
            module=module,
            code=function.body,
            locals=list(args) + [_zero(t) for t in function.locals],
            arity=len(func_type.results),
            kind=kind,
            result_bits=tuple(VALTYPE_BITS.get(r, 32) for r in func_type.results),
        )
        state.frames.append(frame)
        return frame

    # run loop

    def run(self, state: MachineState) -> list[MachineState]:
        """Execute *state* until it halts, runs out of frames, or forks.

        Returns ``[state]`` when it stopped without forking, otherwise the
        successors of the forking instruction.
        """
        max_steps = self.config.max_steps
        while not state.halted and state.frames:
            if state.steps >= max_steps:
                state.terminate(BudgetExceeded(f"step budget of {max_steps} instructions exhausted"))
                break
            if self.deadline is not None and state.steps % 1024 == 0 and time.monotonic() > self.deadline:
                state.terminate(BudgetExceeded("time budget exhausted"))
                break
            state.steps += 1
            frame = state.frames[-1]
            pc = frame.pc
            try:
                successors = self.step(state)
            except StateError as exc:
                self._fail(state, frame, exc)
                break
            except IndexError as exc:
                self._fail(state, frame, Trap(str(exc)))
                break
            if len(successors) != 1 or successors[0] is not state:
                site = f"{frame.module.function_label(frame.func_index)} @ {frame.code[pc].offset:#x}"
                for successor in successors:
                    successor.location = site
                return successors
        return [state]

    def run_concrete(self, state: MachineState) -> MachineState:
        """Run a state that cannot fork (all inputs concrete) to the end."""
        while not state.halted and state.frames:
            successors = self.run(state)
            if len(successors) != 1:
                raise RuntimeError("concrete execution produced a fork")
            state = successors[0]
        return state

    def _fail(self, state: MachineState, frame: Frame, error: StateError) -> None:
        instruction = frame.code[frame.pc] if frame.pc < len(frame.code) else None
        if error.offset is None and instruction is not None:
            error.offset = instruction.offset
        state.terminate(error)
        where = frame.module.function_label(frame.func_index)
        if error.offset is not None:
            where = f"{where} @ {error.offset:#x}"
        state.error_message = f"{error.message} in {where}"
        logger.debug("state terminated (%s): %s", error.reason, state.error_message)

    def step(self, state: MachineState) -> list[MachineState]:
        frame = state.frame
        if frame.pc >= len(frame.code):
            raise Trap("execution ran past the end of the function body")
        return self._execute_instruction(state, frame, frame.code[frame.pc])

    # helpers

    def _return(self, state: MachineState, frame: Frame) -> list[MachineState]:
        results = state.pop_many(frame.arity)
        state.frames.pop()
        if frame.kind == FrameKind.INVOKE:
            state.push(invoke_result(results))
        elif frame.kind == FrameKind.ENTRY:
            state.finish(results[0] if results else None)
        elif frame.kind == FrameKind.CALL:
            state.frame.stack.extend(results)
        return [state]

    def _branch(self, state: MachineState, frame: Frame, depth: int) -> list[MachineState]:
        if depth == len(frame.labels):
            return self._return(state, frame)
        if depth > len(frame.labels):
            raise Trap(f"branch depth {depth} exceeds nesting")
        label = frame.labels[-1 - depth]
        carried = state.pop_many(label.arity)
        del frame.stack[label.height :]
        frame.stack.extend(carried)
        if label.is_loop:
            del frame.labels[len(frame.labels) - depth :]
            if state.mode == Mode.SYMBOLIC:
                self._count_iteration(state, frame, label)
            frame.pc = label.loop_start + 1
        else:
            del frame.labels[len(frame.labels) - 1 - depth :]
            frame.pc = label.continuation
        return [state]

    def _branch_child(self, child: MachineState, depth: int) -> None:
        """Branch a freshly forked child; an error ends only that child."""
        frame = child.frame
        try:
            self._branch(child, frame, depth)
        except StateError as exc:
            self._fail(child, frame, exc)

    def _count_iteration(self, state: MachineState, frame: Frame, label: Label) -> None:
        key = (len(state.frames), frame.address, frame.func_index, label.loop_start)
        count = state.loop_counts.get(key, 0) + 1
        if count > self.config.max_loop_iterations:
            raise BudgetExceeded(
                f"loop at {frame.code[label.loop_start].offset:#x} exceeded "
                f"{self.config.max_loop_iterations} iterations"
            )
        state.loop_counts[key] = count

    @staticmethod
    def _enter_if(frame: Frame, instruction: Instruction, taken: bool) -> None:
        if taken:
            frame.pc += 1
        elif instruction.else_index != -1:
            frame.pc = instruction.else_index + 1
        else:
            frame.pc = instruction.end_index

    def _split_trap(
        self, state: MachineState, condition: Truth, message: str, instruction: Instruction
    ) -> list[MachineState]:
        """Split off a trapping child when *condition* may hold."""
        if condition is False:
            return []
        if condition is True:
            raise Trap(message, offset=instruction.offset)
        trapped = state.branch(condition)
        self._fail(trapped, trapped.frame, Trap(message, offset=instruction.offset))
        state.add_constraint(z3.Not(condition))
        return [trapped]

    def _concrete_int(self, state: MachineState, value: Value, reason: str, instruction: Instruction) -> int:
        if isinstance(value, Concrete):
            return value.value
        if self.solver is None:
            raise NonConcreteValue(f"symbolic operand {value} needs a solver", offset=instruction.offset, reason=reason)
        return self.solver.concretize(state, value, reason=reason)

    def _memory(self, state: MachineState) -> LinearMemory:
        memory = state.instance.memory
        if memory is None:
            raise Trap("module has no linear memory")
        return memory

    def _call(self, state: MachineState, frame: Frame, func_index: int, instruction: Instruction) -> list[MachineState]:
        module = frame.module
        func_type = module.func_type(func_index)
        args = state.pop_many(len(func_type.params))
        frame.pc += 1
        imported = module.imported_functions
        if func_index < len(imported):
            return self.host.call(state, imported[func_index].name, args, instruction.offset)
        self.push_call(state, frame.address, func_index, args)
        return [state]

    # dispatch

    def _execute_instruction(self, state: MachineState, frame: Frame, instruction: Instruction) -> list[MachineState]:
        opcode = instruction.opcode
        imm = instruction.immediates

        if opcode == OpCode.LOCAL_GET:
            state.push(frame.locals[imm[0]])
            frame.pc += 1
            return [state]

        if opcode == OpCode.LOCAL_SET:
            frame.locals[imm[0]] = state.pop()
            frame.pc += 1
            return [state]

        if opcode == OpCode.LOCAL_TEE:
            if not frame.stack:
                raise IndexError("operand stack underflow")
            frame.locals[imm[0]] = frame.stack[-1]
            frame.pc += 1
            return [state]

        if opcode == OpCode.I32_CONST:
            state.push(Concrete(imm[0], 32))
            frame.pc += 1
            return [state]

        if opcode == OpCode.I64_CONST:
            state.push(Concrete(imm[0], 64))
            frame.pc += 1
            return [state]

        name = _BINARY.get(opcode)
        if name is not None:
            right = state.pop()
            left = state.pop()
            extra: list[MachineState] = []
            if name in _DIVISIONS:
                zero = is_zero(right)
                if zero is True:
                    raise Trap("integer divide by zero", offset=instruction.offset)
                condition, message = zero, "integer divide by zero"
                if name == "div_s":
                    overflow = signed_division_overflow(left, right)
                    if overflow is True:
                        raise Trap("integer overflow", offset=instruction.offset)
                    if overflow is not False:
                        condition = overflow if zero is False else z3.Or(zero, overflow)
                        message = "integer overflow" if zero is False else "integer divide by zero or overflow"
                extra = self._split_trap(state, condition, message, instruction)
            elif name in _CHECKED and self.config.arithmetic == "checked":
                extra = self._split_trap(state, overflow_condition(name, left, right), "integer overflow", instruction)
            state.push(binary(name, left, right))
            frame.pc += 1
            return extra + [state]

        name = _COMPARE.get(opcode)
        if name is not None:
            right = state.pop()
            left = state.pop()
            state.push(compare(name, left, right))
            frame.pc += 1
            return [state]

        name = _UNARY.get(opcode)
        if name is not None:
            state.push(unary(name, state.pop()))
            frame.pc += 1
            return [state]

        name = _CONVERSIONS.get(opcode)
        if name is not None:
            state.push(convert(name, state.pop()))
            frame.pc += 1
            return [state]

        if opcode in LOAD_SHAPES:
            width, bits, signed = LOAD_SHAPES[opcode]
            memory = self._memory(state)
            base = self._concrete_int(state, state.pop(), "SymbolicAddress", instruction)
            state.push(memory.load(base + imm[0][1], width, bits, signed))
            frame.pc += 1
            return [state]

        if opcode in STORE_WIDTHS:
            value = state.pop()
            memory = self._memory(state)
            base = self._concrete_int(state, state.pop(), "SymbolicAddress", instruction)
            memory.store(base + imm[0][1], STORE_WIDTHS[opcode], value)
            frame.pc += 1
            return [state]

        if opcode in (OpCode.BLOCK, OpCode.LOOP):
            params, results = frame.module.block_arity(imm[0])
            height = len(frame.stack) - params
            if height < 0:
                raise IndexError("operand stack underflow")
            if opcode == OpCode.LOOP:
                frame.labels.append(Label(params, height, instruction.end_index + 1, loop_start=frame.pc))
                state.loop_counts.pop((len(state.frames), frame.address, frame.func_index, frame.pc), None)
            else:
                frame.labels.append(Label(results, height, instruction.end_index + 1))
            frame.pc += 1
            return [state]

        if opcode == OpCode.IF:
            flag = truth(state.pop())
            params, results = frame.module.block_arity(imm[0])
            frame.labels.append(Label(results, len(frame.stack) - params, instruction.end_index + 1))
            if isinstance(flag, bool):
                self._enter_if(frame, instruction, flag)
                return [state]
            taken = state.branch(flag)
            self._enter_if(taken.frame, instruction, True)
            state.add_constraint(z3.Not(flag))
            self._enter_if(frame, instruction, False)
            return [taken, state]

        if opcode == OpCode.ELSE:
            frame.pc = instruction.end_index
            return [state]

        if opcode == OpCode.END:
            if frame.labels:
                frame.labels.pop()
                frame.pc += 1
                return [state]
            return self._return(state, frame)

        if opcode == OpCode.BR:
            return self._branch(state, frame, imm[0])

        if opcode == OpCode.BR_IF:
            flag = truth(state.pop())
            if flag is True:
                return self._branch(state, frame, imm[0])
            if flag is False:
                frame.pc += 1
                return [state]
            taken = state.branch(flag)
            self._branch_child(taken, imm[0])
            state.add_constraint(z3.Not(flag))
            frame.pc += 1
            return [taken, state]

        if opcode == OpCode.BR_TABLE:
            labels, default = imm[0]
            index = state.pop()
            if isinstance(index, Concrete):
                depth = labels[index.value] if index.value < len(labels) else default
                return self._branch(state, frame, depth)
            cases: dict[int, list[z3.BoolRef]] = {}
            for position, depth in enumerate(labels):
                cases.setdefault(depth, []).append(index.term == z3.BitVecVal(position, index.bits))
            cases.setdefault(default, []).append(z3.UGE(index.term, z3.BitVecVal(len(labels), index.bits)))
            if len(cases) == 1:
                return self._branch(state, frame, default)
            children: list[MachineState] = []
            for depth, conditions in cases.items():
                child = state.branch(conditions[0] if len(conditions) == 1 else z3.Or(*conditions))
                self._branch_child(child, depth)
                children.append(child)
            return children

        if opcode == OpCode.RETURN:
            return self._return(state, frame)

        if opcode == OpCode.CALL:
            return self._call(state, frame, imm[0], instruction)

        if opcode == OpCode.CALL_INDIRECT:
            type_index, table_index = imm
            if table_index != 0:
                raise UnsupportedInstruction("call_indirect through a table other than 0")
            slot = self._concrete_int(state, state.pop(), "SymbolicTableIndex", instruction)
            table = state.instance.table
            if slot >= len(table):
                raise Trap(f"undefined table element {slot}")
            target = table[slot]
            if target is None:
                raise Trap(f"uninitialized table element {slot}")
            if frame.module.func_type(target) != frame.module.types[type_index]:
                raise Trap("indirect call signature mismatch")
            return self._call(state, frame, target, instruction)

        if opcode == OpCode.DROP:
            state.pop()
            frame.pc += 1
            return [state]

        if opcode in (OpCode.SELECT, OpCode.SELECT_T):
            condition = state.pop()
            second = state.pop()
            first = state.pop()
            state.push(select(condition, first, second))
            frame.pc += 1
            return [state]

        if opcode == OpCode.GLOBAL_GET:
            state.push(state.instance.globals[imm[0]])
            frame.pc += 1
            return [state]

        if opcode == OpCode.GLOBAL_SET:
            state.instance.globals[imm[0]] = state.pop()
            frame.pc += 1
            return [state]

        if opcode == OpCode.NOP:
            frame.pc += 1
            return [state]

        if opcode == OpCode.UNREACHABLE:
            raise Trap("unreachable executed", offset=instruction.offset)

        if opcode == OpCode.MEMORY_SIZE:
            state.push(Concrete(self._memory(state).pages, 32))
            frame.pc += 1
            return [state]

        if opcode == OpCode.MEMORY_GROW:
            memory = self._memory(state)
            delta = self._concrete_int(state, state.pop(), "SymbolicAddress", instruction)
            state.push(Concrete(memory.grow(delta), 32))
            frame.pc += 1
            return [state]

        if opcode in FLOAT_OPCODES:
            raise UnsupportedInstruction(f"{mnemonic(opcode)} is not supported", offset=instruction.offset)

        return self._execute_bulk(state, frame, instruction)

    def _execute_bulk(self, state: MachineState, frame: Frame, instruction: Instruction) -> list[MachineState]:
        """Bulk memory, table and reference instructions."""
        opcode = instruction.opcode
        imm = instruction.immediates
        module: WasmModule = frame.module

        def operands(count: int) -> list[int]:
            values = state.pop_many(count)
            return [self._concrete_int(state, v, "SymbolicAddress", instruction) for v in values]

        if opcode == OpCode.MEMORY_FILL:
            destination, byte, length = operands(3)
            self._memory(state).fill(destination, byte, length)
        elif opcode == OpCode.MEMORY_COPY:
            destination, source, length = operands(3)
            self._memory(state).copy(destination, source, length)
        elif opcode == OpCode.MEMORY_INIT:
            destination, source, length = operands(3)
            segment = b"" if imm[0] in state.instance.dropped_data else module.data[imm[0]].data
            if source + length > len(segment):
                raise Trap("out of bounds memory access in memory.init")
            self._memory(state).write_bytes(destination, segment[source : source + length])
        elif opcode == OpCode.DATA_DROP:
            state.instance.dropped_data.add(imm[0])
        elif opcode == OpCode.REF_NULL:
            state.push(Concrete(NULL_REF, 32))
        elif opcode == OpCode.REF_IS_NULL:
            reference = state.pop()
            state.push(Concrete(int(isinstance(reference, Concrete) and reference.value == NULL_REF), 32))
        elif opcode == OpCode.REF_FUNC:
            state.push(Concrete(imm[0], 32))
        elif opcode in (
            OpCode.TABLE_GET, OpCode.TABLE_SET, OpCode.TABLE_SIZE, OpCode.TABLE_GROW,
            OpCode.TABLE_FILL, OpCode.TABLE_COPY, OpCode.TABLE_INIT, OpCode.ELEM_DROP,
        ):
            self._execute_table(state, instruction, operands)
        else:
            raise UnsupportedInstruction(f"{mnemonic(opcode)} is not supported", offset=instruction.offset)
        frame.pc += 1
        return [state]

    def _execute_table(self, state: MachineState, instruction: Instruction, operands) -> None:
        opcode = instruction.opcode
        imm = instruction.immediates
        instance = state.instance
        table = instance.table

        def entry(value: int) -> int | None:
            return None if value == NULL_REF else value

        if opcode == OpCode.ELEM_DROP:
            instance.dropped_elements.add(imm[0])
            return
        if opcode == OpCode.TABLE_INIT:
            segment_index, table_index = imm
        else:
            table_index = imm[0]
        if table_index != 0:
            raise UnsupportedInstruction("only table 0 is supported", offset=instruction.offset)

        if opcode == OpCode.TABLE_SIZE:
            state.push(Concrete(len(table), 32))
        elif opcode == OpCode.TABLE_GET:
            (slot,) = operands(1)
            if slot >= len(table):
                raise Trap("out of bounds table access")
            target = table[slot]
            state.push(Concrete(NULL_REF if target is None else target, 32))
        elif opcode == OpCode.TABLE_SET:
            slot, value = operands(2)
            if slot >= len(table):
                raise Trap("out of bounds table access")
            table[slot] = entry(value)
        elif opcode == OpCode.TABLE_GROW:
            value, delta = operands(2)
            module = self.registry.resolve(instance.module_hash)
            limit = module.tables[0].limits.maximum if module.tables else None
            old = len(table)
            if old + delta > min(limit if limit is not None else _MAX_TABLE_SIZE, _MAX_TABLE_SIZE):
                state.push(Concrete(-1, 32))
            else:
                table.extend([entry(value)] * delta)
                state.push(Concrete(old, 32))
        elif opcode == OpCode.TABLE_FILL:
            slot, value, length = operands(3)
            if slot + length > len(table):
                raise Trap("out of bounds table access")
            table[slot : slot + length] = [entry(value)] * length
        elif opcode == OpCode.TABLE_COPY:
            destination, source, length = operands(3)
            if source + length > len(table) or destination + length > len(table):
                raise Trap("out of bounds table access")
            table[destination : destination + length] = table[source : source + length]
        elif opcode == OpCode.TABLE_INIT:
            destination, source, length = operands(3)
            module = self.registry.resolve(instance.module_hash)
            functions = () if segment_index in instance.dropped_elements else module.elements[segment_index].functions
            if source + length > len(functions) or destination + length > len(table):
                raise Trap("out of bounds table access")
            table[destination : destination + length] = list(functions[source : source + length])
