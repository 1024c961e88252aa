"""Tests for prove mode: symbolic exploration, verdicts and witnesses."""
from wasm_sym.config import EngineConfig
from wasm_sym.engine.host import HOST_FUNCTIONS, HOST_MODULE
from wasm_sym.engine.session import TestSession
from wasm_sym.proof.store import ProofStore
from wasm_sym.proof.tree import VerdictKind
from wasm_sym.wasm.encoder import ModuleBuilder
from wasm_sym.wasm.parser import ValType

I32, I64 = ValType.I32, ValType.I64
ADDER_ADDRESS = 0x100


def _adder() -> bytes:
    builder = ModuleBuilder()
    builder.add_function("add", [I32, I32], [I64], """
        local.get 0
        i64.extend_i32_u
        local.get 1
        i64.extend_i32_u
        i64.add
    """)
    builder.add_function("add32", [I32, I32], [I32], """
        local.get 0
        local.get 1
        i32.add
    """)
    return builder.build()


def _adder_tests() -> bytes:
    builder = ModuleBuilder()
    for name in ("create_contract", "invoke"):
        signature = HOST_FUNCTIONS[name]
        builder.import_function(HOST_MODULE, name, signature.params, signature.results)
    target = builder.add_global(I64, 0)
    builder.add_data(0, b"addadd32")
    builder.add_function("init", [I64], [], f"""
        i64.const {ADDER_ADDRESS}
        local.get 0
        call $create_contract
        global.set {target}
    """)
    builder.add_function("call_adder", [I32, I32, I32, I32], [I64], f"""
        i32.const 16
        local.get 2
        i64.extend_i32_u
        i64.store
        i32.const 24
        local.get 3
        i64.extend_i32_u
        i64.store
        global.get {target}
        local.get 0
        local.get 1
        i32.const 16
        i32.const 2
        call $invoke
    """, export=False)
    for name, (pointer, length) in (("test_add_widened", (0, 3)), ("test_add_narrow", (3, 5))):
        builder.add_function(name, [I32, I32], [I32], f"""
            i32.const {pointer}
            i32.const {length}
            local.get 0
            local.get 1
            call $call_adder
            local.get 0
            i64.extend_i32_u
            local.get 1
            i64.extend_i32_u
            i64.add
            i64.eq
        """)
    return builder.build()


def _adder_session(domains=None, **config) -> TestSession:
    return TestSession.from_bytes(
        _adder_tests(), [("adder", _adder())], config=EngineConfig(**config), domains=domains
    )


def _prove(session: TestSession, name: str):
    return session.prove(session.select(name)[0])


def _standalone(*functions, init_domains=None, **config) -> TestSession:
    builder = ModuleBuilder()
    state = builder.add_global(I32, 0)
    if init_domains is not None:
        builder.add_function("init", [I32], [], f"local.get 0\nglobal.set {state}")
    for name, params, body in functions:
        builder.add_function(name, params, [I32], body.format(state=state))
    return TestSession.from_bytes(builder.build(), config=EngineConfig(**config), domains=init_domains)


def test_widened_add_is_proved_exhaustively():
    result, tree = _prove(_adder_session(), "test_add_widened")
    assert result.verdict.kind == VerdictKind.PASSED
    assert result.exhaustive is True
    assert result.counts["failed"] == 0
    assert result.counts["passed"] == result.paths >= 1
    assert tree.verdict().kind == VerdictKind.PASSED


def test_narrow_add_is_falsified_with_a_replayable_witness():
    session = _adder_session()
    result, tree = _prove(session, "test_add_narrow")

    assert result.verdict.kind == VerdictKind.FAILED
    assert result.verdict.reason == "Falsified"
    witness = result.verdict.witness
    assert witness["arg0"] + witness["arg1"] >= 1 << 32
    assert result.verdict.confirmed is True
    assert tree.failing_leaf() is not None

    test = session.select("test_add_narrow")[0]
    assert session.replay(test, witness) is True
    fuzz_verdict = session.verdict_of(session.execute(test, [witness["arg0"], witness["arg1"]]))
    assert fuzz_verdict.kind == VerdictKind.FAILED


def test_domains_restrict_symbolic_inputs():
    half = [0, 0x7FFF_FFFF]
    session = _adder_session(domains={"test_add_narrow": [half, half]})
    result, _ = _prove(session, "test_add_narrow")
    assert result.verdict.kind == VerdictKind.PASSED
    assert result.exhaustive


def test_trap_on_some_input_fails_with_witness():
    session = _standalone(("test_div", [I32], """
        i32.const 100
        local.get 0
        i32.div_u
        drop
        i32.const 1
    """))
    result, _ = _prove(session, "test_div")
    assert result.verdict.kind == VerdictKind.FAILED
    assert result.verdict.reason == "Trap"
    assert result.verdict.witness == {"arg0": 0}
    assert result.verdict.confirmed is True


LOOP = """
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
    i32.const 1
    i32.ge_u
"""


def test_loop_bound_makes_the_verdict_stuck():
    builder = ModuleBuilder()
    builder.add_function("test_count", [I32], [I32], LOOP, locals=[I32])
    session = TestSession.from_bytes(builder.build(), config=EngineConfig(max_loop_iterations=4))
    result, tree = _prove(session, "test_count")

    assert result.verdict.kind == VerdictKind.STUCK
    assert result.verdict.reason == "BudgetExceeded"
    assert result.exhaustive is False
    assert result.counts["stuck"] == 1
    assert result.counts["passed"] == 5
    assert not tree.truncated


BRANCHES = """
    local.get 0
    i32.const 1
    i32.and
    if
      nop
    end
    local.get 0
    i32.const 2
    i32.and
    if
      nop
    end
    local.get 0
    i32.const 4
    i32.and
    if
      nop
    end
    i32.const 1
"""


def test_path_budget_truncates_exploration():
    session = _standalone(("test_branches", [I32], BRANCHES), max_paths=2)
    result, tree = _prove(session, "test_branches")
    assert tree.truncated
    assert result.verdict.kind == VerdictKind.STUCK
    assert result.verdict.reason == "BudgetExceeded"
    assert not result.exhaustive


def test_breadth_first_reaches_the_same_verdict():
    for strategy in ("dfs", "bfs"):
        session = _standalone(("test_branches", [I32], BRANCHES), strategy=strategy)
        result, _ = _prove(session, "test_branches")
        assert result.verdict.kind == VerdictKind.PASSED
        assert result.paths == 8
        assert result.exhaustive


def test_every_path_infeasible_is_stuck():
    builder = ModuleBuilder()
    assume = HOST_FUNCTIONS["assume"]
    builder.import_function(HOST_MODULE, "assume", assume.params, assume.results)
    builder.add_function("test_never", [I32], [I32], "i32.const 0\ncall $assume\ni32.const 1")
    session = TestSession.from_bytes(builder.build())
    result, _ = _prove(session, "test_never")
    assert result.verdict.kind == VerdictKind.STUCK
    assert result.verdict.reason == "NoFeasiblePath"


def test_symbolic_init_arguments_reach_the_witness():
    check = ("test_state_small", [I32], "global.get {state}\ni32.const 1000\ni32.lt_u")
    session = _standalone(check, init_domains={"init": [[0, 2000]]})
    result, _ = _prove(session, "test_state_small")
    assert result.verdict.kind == VerdictKind.FAILED
    assert 1000 <= result.verdict.witness["init.arg0"] <= 2000
    assert result.verdict.confirmed is True

    session = _standalone(check, init_domains={"init": [[0, 999]]})
    result, _ = _prove(session, "test_state_small")
    assert result.verdict.kind == VerdictKind.PASSED


def test_parallel_run_keeps_test_order_and_saves_proofs(tmp_path):
    session = _adder_session(workers=2)
    results = session.run("prove", store=ProofStore(tmp_path))
    assert [r.name for r in results] == ["test_add_widened", "test_add_narrow"]
    assert [r.verdict.kind for r in results] == [VerdictKind.PASSED, VerdictKind.FAILED]
    assert all(r.proof_path and r.proof_path.startswith(str(tmp_path)) for r in results)
