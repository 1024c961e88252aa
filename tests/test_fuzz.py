"""Tests for fuzz mode: example generation, shrinking and verdicts."""
from wasm_sym.config import EngineConfig
from wasm_sym.engine.fuzzer import Fuzzer
from wasm_sym.engine.host import HOST_FUNCTIONS, HOST_MODULE
from wasm_sym.engine.session import TestSession
from wasm_sym.proof.tree import VerdictKind
from wasm_sym.wasm.encoder import ModuleBuilder
from wasm_sym.wasm.parser import ValType

I32 = ValType.I32


def _contract() -> bytes:
    builder = ModuleBuilder()
    assume = HOST_FUNCTIONS["assume"]
    builder.import_function(HOST_MODULE, "assume", assume.params, assume.results)
    builder.add_function("test_add_widened", [I32, I32], [I32], """
        local.get 0
        i64.extend_i32_u
        local.get 1
        i64.extend_i32_u
        i64.add
        local.get 0
        i64.extend_i32_u
        i64.ge_u
    """)
    builder.add_function("test_add_narrow", [I32, I32], [I32], """
        local.get 0
        local.get 1
        i32.add
        i64.extend_i32_u
        local.get 0
        i64.extend_i32_u
        local.get 1
        i64.extend_i32_u
        i64.add
        i64.eq
    """)
    builder.add_function("test_small", [I32], [I32], """
        local.get 0
        i32.const 100
        i32.lt_u
    """)
    builder.add_function("test_assume_never", [I32], [I32], """
        i32.const 0
        call $assume
        i32.const 1
    """)
    builder.add_function("test_not_max", [I32], [I32], """
        local.get 0
        i32.const -1
        i32.ne
    """)
    builder.add_function("test_spins_when_large", [I32], [I32], """
        local.get 0
        i32.const 10
        i32.gt_u
        if
          loop
            br 0
          end
        end
        i32.const 1
    """)
    return builder.build()


def _fuzz(name: str, domains=None, **config):
    settings = {"max_examples": 60, "max_steps": 2_000, **config}
    session = TestSession.from_bytes(_contract(), config=EngineConfig(**settings), domains=domains)
    return session.fuzz(session.select(name)[0])


def test_correct_property_passes_without_claiming_a_proof():
    result = _fuzz("test_add_widened")
    assert result.verdict.kind == VerdictKind.PASSED
    assert result.mode == "fuzz"
    assert result.exhaustive is False
    assert result.examples > 0
    assert result.first_failure is None


def test_overflowing_add_is_falsified_and_shrunk():
    result = _fuzz("test_add_narrow")
    assert result.verdict.kind == VerdictKind.FAILED
    assert result.verdict.reason == "Falsified"
    assert result.verdict.confirmed is True

    witness = result.verdict.witness
    assert set(witness) == {"arg0", "arg1"}
    assert witness["arg0"] + witness["arg1"] >= 1 << 32

    first = result.first_failure
    assert first["arg0"] + first["arg1"] >= 1 << 32
    assert (witness["arg0"], witness["arg1"]) <= (first["arg0"], first["arg1"])


def test_shrinking_reaches_the_boundary():
    result = _fuzz("test_small")
    assert result.verdict.kind == VerdictKind.FAILED
    assert result.verdict.witness == {"arg0": 100}


def test_domains_bound_generated_arguments():
    result = _fuzz("test_small", domains={"test_small": [[0, 99]]})
    assert result.verdict.kind == VerdictKind.PASSED


def test_seed_makes_runs_reproducible():
    first = _fuzz("test_add_narrow", seed=1234)
    second = _fuzz("test_add_narrow", seed=1234)
    assert first.first_failure == second.first_failure
    assert first.verdict.witness == second.verdict.witness


def test_rejecting_every_example_is_stuck():
    result = _fuzz("test_assume_never", max_examples=10)
    assert result.verdict.kind == VerdictKind.STUCK
    assert result.verdict.reason == "AssumptionsUnsatisfiable"
    assert result.rejected > 0


def test_budget_exhaustion_is_reported_as_stuck():
    result = _fuzz("test_spins_when_large")
    assert result.verdict.kind == VerdictKind.STUCK
    assert result.verdict.reason == "BudgetExceeded"
    assert "example" in result.verdict.detail


def test_domain_corners_catch_a_single_bad_value():
    result = _fuzz("test_not_max", max_examples=5)
    assert result.verdict.kind == VerdictKind.FAILED
    assert result.verdict.witness == {"arg0": 0xFFFF_FFFF}


def test_overflow_is_found_for_any_seed():
    for value in range(5):
        result = _fuzz("test_add_narrow", max_examples=10, seed=value)
        assert result.verdict.kind == VerdictKind.FAILED, value


def test_corners_follow_declared_domains():
    session = TestSession.from_bytes(_contract(), domains={"test_add_widened": [[1, 9], [-3, 3]]})
    corners = Fuzzer(session).corners(session.select("test_add_widened")[0])
    assert corners == [(1, -3), (9, 3), (9, -3), (1, 3)]
