"""Tests for the dual-mode interpreter."""
import z3

from wasm_sym.config import EngineConfig
from wasm_sym.engine.interpreter import Interpreter
from wasm_sym.engine.solver import ConstraintManager
from wasm_sym.engine.state import TEST_ADDRESS, FrameKind, MachineState, Mode, Status
from wasm_sym.engine.values import Concrete, fresh
from wasm_sym.wasm.encoder import ModuleBuilder
from wasm_sym.wasm.parser import VALTYPE_BITS, ValType
from wasm_sym.wasm.registry import ModuleRegistry

I32, I64 = ValType.I32, ValType.I64


def _instantiate(builder: ModuleBuilder, config=None, mode=Mode.CONCRETE):
    registry = ModuleRegistry()
    handle = registry.register(builder.build())
    solver = ConstraintManager() if mode == Mode.SYMBOLIC else None
    interpreter = Interpreter(registry, config, solver)
    state = MachineState(mode=mode)
    interpreter.deploy(state, TEST_ADDRESS, handle.hash)
    state = interpreter.run_concrete(state)
    return interpreter, state, registry.resolve(handle.hash)


def _call(builder: ModuleBuilder, name: str, *args: int, config=None) -> MachineState:
    interpreter, state, module = _instantiate(builder, config)
    index = module.exported_function(name)
    params = module.func_type(index).params
    values = [Concrete(v, VALTYPE_BITS[p]) for v, p in zip(args, params)]
    interpreter.push_call(state, TEST_ADDRESS, index, values, kind=FrameKind.ENTRY)
    return interpreter.run_concrete(state)


def _result(state: MachineState) -> int:
    assert state.status == Status.RETURNED, state.error_message
    return state.result.value


def test_widening_add():
    builder = ModuleBuilder()
    builder.add_function("add", [I32, I32], [I64], """
        local.get 0
        i64.extend_i32_u
        local.get 1
        i64.extend_i32_u
        i64.add
    """)
    assert _result(_call(builder, "add", 0xFFFFFFFF, 0xFFFFFFFF)) == 0x1_FFFF_FFFE


def test_loop_sums_down_to_zero():
    builder = ModuleBuilder()
    builder.add_function("sum", [I32], [I32], """
        block
          loop
            local.get 0
            i32.eqz
            br_if 1
            local.get 1
            local.get 0
            i32.add
            local.set 1
            local.get 0
            i32.const 1
            i32.sub
            local.set 0
            br 0
          end
        end
        local.get 1
    """, locals=[I32])
    assert _result(_call(builder, "sum", 10)) == 55
    assert _result(_call(builder, "sum", 0)) == 0


def test_br_table_picks_label_or_default():
    builder = ModuleBuilder()
    builder.add_function("pick", [I32], [I32], """
        block
          block
            block
              local.get 0
              br_table 0 1 2
            end
            i32.const 10
            return
          end
          i32.const 20
          return
        end
        i32.const 30
    """)
    assert _result(_call(builder, "pick", 0)) == 10
    assert _result(_call(builder, "pick", 1)) == 20
    assert _result(_call(builder, "pick", 7)) == 30


def test_if_else_and_select():
    builder = ModuleBuilder()
    builder.add_function("sign", [I32], [I32], """
        local.get 0
        i32.const 0
        i32.lt_s
        if i32
          i32.const -1
        else
          i32.const 100
          i32.const 200
          local.get 0
          select
        end
    """)
    assert _result(_call(builder, "sign", -5)) == 0xFFFFFFFF
    assert _result(_call(builder, "sign", 3)) == 100
    assert _result(_call(builder, "sign", 0)) == 200


def _indirect_module() -> ModuleBuilder:
    builder = ModuleBuilder()
    signature = builder.add_type([I32], [I32])
    builder.add_function("double", [I32], [I32], "local.get 0\ni32.const 2\ni32.mul", export=False)
    builder.add_function("widen", [I64], [I64], "local.get 0", export=False)
    builder.add_function("dispatch", [I32, I32], [I32], f"""
        local.get 0
        local.get 1
        call_indirect {signature}
    """)
    builder.add_table(["double", "widen"])
    return builder


def test_call_indirect_through_the_table():
    assert _result(_call(_indirect_module(), "dispatch", 21, 0)) == 42


def test_call_indirect_signature_mismatch_traps():
    state = _call(_indirect_module(), "dispatch", 21, 1)
    assert state.status == Status.FAILED
    assert "signature mismatch" in state.error_message

    state = _call(_indirect_module(), "dispatch", 21, 9)
    assert state.status == Status.FAILED
    assert "undefined table element" in state.error_message


def test_traps_fail_the_state():
    builder = ModuleBuilder()
    builder.add_function("div", [I32, I32], [I32], "local.get 0\nlocal.get 1\ni32.div_u")
    builder.add_function("boom", [], [I32], "unreachable")
    builder.add_function("peek", [I32], [I32], "local.get 0\ni32.load")
    builder.add_memory(1)

    state = _call(builder, "div", 1, 0)
    assert state.status == Status.FAILED
    assert state.error.reason == "Trap"
    assert "integer divide by zero" in state.error_message
    assert "div @ 0x" in state.error_message

    assert _call(builder, "boom").status == Status.FAILED
    assert "out of bounds" in _call(builder, "peek", 65534).error_message
    assert _result(_call(builder, "div", 7, 2)) == 3


def test_signed_division_overflow_traps():
    builder = ModuleBuilder()
    builder.add_function("div", [I32, I32], [I32], "local.get 0\nlocal.get 1\ni32.div_s")
    state = _call(builder, "div", 0x80000000, 0xFFFFFFFF)
    assert state.status == Status.FAILED
    assert "integer overflow" in state.error_message


def test_step_budget_leaves_state_stuck():
    builder = ModuleBuilder()
    builder.add_function("spin", [], [I32], "loop\nbr 0\nend\ni32.const 1")
    state = _call(builder, "spin", config=EngineConfig(max_steps=500))
    assert state.status == Status.STUCK
    assert state.error.reason == "BudgetExceeded"
    assert state.steps == 500


def test_call_depth_limit_leaves_state_stuck():
    builder = ModuleBuilder()
    builder.add_function("recurse", [], [I32], "call $recurse")
    state = _call(builder, "recurse", config=EngineConfig(max_call_depth=16))
    assert state.status == Status.STUCK
    assert state.error.reason == "BudgetExceeded"
    assert "call depth" in state.error_message


def test_float_instructions_are_unsupported():
    builder = ModuleBuilder()
    builder.add_function("f", [], [I32], "f32.const 1.5\ndrop\ni32.const 1")
    state = _call(builder, "f")
    assert state.status == Status.STUCK
    assert state.error.reason == "UnsupportedInstruction"


def test_checked_arithmetic_traps_on_overflow():
    builder = ModuleBuilder()
    builder.add_function("add", [I32, I32], [I32], "local.get 0\nlocal.get 1\ni32.add")
    assert _result(_call(builder, "add", 0xFFFFFFFF, 1)) == 0

    state = _call(builder, "add", 0xFFFFFFFF, 1, config=EngineConfig(arithmetic="checked"))
    assert state.status == Status.FAILED
    assert "integer overflow" in state.error_message
    assert _result(_call(builder, "add", 2, 3, config=EngineConfig(arithmetic="checked"))) == 5


def test_memory_globals_data_and_start_function():
    builder = ModuleBuilder()
    counter = builder.add_global(I32, 0)
    builder.add_function("setup", [], [], f"i32.const 7\nglobal.set {counter}", export=False)
    builder.add_function("read", [], [I32], f"""
        i32.const 0
        i32.load8_u offset=16
        global.get {counter}
        i32.add
        i32.const 32
        i32.const 0xABCD
        i32.store16
        i32.const 32
        i32.load16_u
        i32.add
    """)
    builder.add_data(16, b"\x05")
    builder.start = "setup"
    assert _result(_call(builder, "read")) == 5 + 7 + 0xABCD


def test_memory_grow_and_size():
    builder = ModuleBuilder()
    builder.add_function("grow", [], [I32], """
        i32.const 2
        memory.grow
        drop
        memory.size
    """)
    builder.add_memory(1, 4)
    assert _result(_call(builder, "grow")) == 3


def _symbolic_entry(builder: ModuleBuilder, name: str):
    interpreter, state, module = _instantiate(builder, mode=Mode.SYMBOLIC)
    index = module.exported_function(name)
    params = module.func_type(index).params
    args = [fresh(f"arg{i}", VALTYPE_BITS[p]) for i, p in enumerate(params)]
    interpreter.push_call(state, TEST_ADDRESS, index, args, kind=FrameKind.ENTRY)
    return interpreter, state


def _finish(interpreter: Interpreter, state: MachineState) -> MachineState:
    successors = interpreter.run(state)
    assert len(successors) == 1 and successors[0] is state
    return state


def test_symbolic_branch_forks_with_one_constraint_each():
    builder = ModuleBuilder()
    builder.add_function("small", [I32], [I32], """
        block
          local.get 0
          i32.const 10
          i32.lt_u
          br_if 0
          i32.const 0
          return
        end
        i32.const 1
    """)
    interpreter, state = _symbolic_entry(builder, "small")
    taken, fallthrough = interpreter.run(state)

    assert len(taken.path_condition) == len(fallthrough.path_condition) == 1
    solver = z3.Solver()
    solver.add(taken.path_condition[0], fallthrough.path_condition[0])
    assert solver.check() == z3.unsat
    assert taken.location is not None and "small" in taken.location

    assert _result(_finish(interpreter, taken)) == 1
    assert _result(_finish(interpreter, fallthrough)) == 0


def test_symbolic_division_splits_off_the_trap():
    builder = ModuleBuilder()
    builder.add_function("div", [I32, I32], [I32], "local.get 0\nlocal.get 1\ni32.div_u")
    interpreter, state = _symbolic_entry(builder, "div")
    trapped, survivor = interpreter.run(state)

    assert trapped.status == Status.FAILED
    assert "divide by zero" in trapped.error_message
    y = z3.BitVec("arg1", 32)
    solver = z3.Solver()
    solver.add(*survivor.path_condition, y == 0)
    assert solver.check() == z3.unsat
    assert _finish(interpreter, survivor).status == Status.RETURNED


def test_symbolic_loop_bound_ends_only_the_looping_path():
    builder = ModuleBuilder()
    builder.add_function("count", [I32], [I32], """
        loop
          local.get 1
          i32.const 1
          i32.add
          local.tee 1
          local.get 0
          i32.lt_u
          br_if 0
        end
        local.get 1
    """, locals=[I32])
    config = EngineConfig(max_loop_iterations=3)
    interpreter, state, module = _instantiate(builder, config, mode=Mode.SYMBOLIC)
    index = module.exported_function("count")
    interpreter.push_call(state, TEST_ADDRESS, index, [fresh("arg0", 32)], kind=FrameKind.ENTRY)

    statuses = []
    worklist = [state]
    while worklist:
        current = worklist.pop()
        successors = interpreter.run(current)
        if len(successors) == 1 and successors[0] is current:
            statuses.append(current.status)
            continue
        for child in successors:
            if child.halted:
                statuses.append(child.status)
            else:
                worklist.append(child)

    assert statuses.count(Status.STUCK) == 1
    assert statuses.count(Status.RETURNED) == 4
