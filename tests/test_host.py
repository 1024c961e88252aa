"""Tests for the host bridge: deployment, storage, invocation and assumptions."""
import pytest

from wasm_sym.config import EngineConfig
from wasm_sym.engine.host import HOST_FUNCTIONS, HOST_MODULE
from wasm_sym.engine.session import TestSession
from wasm_sym.engine.state import TEST_ADDRESS, Status
from wasm_sym.engine.values import Concrete
from wasm_sym.errors import ConfigurationError
from wasm_sym.proof.tree import VerdictKind
from wasm_sym.wasm.encoder import ModuleBuilder
from wasm_sym.wasm.parser import ValType

I32, I64 = ValType.I32, ValType.I64
TARGET = 0x100


def _imports(builder: ModuleBuilder, *names: str) -> None:
    for name in names:
        signature = HOST_FUNCTIONS[name]
        builder.import_function(HOST_MODULE, name, signature.params, signature.results)


def _counter(extra_import: str | None = None) -> bytes:
    builder = ModuleBuilder()
    _imports(builder, "storage_get", "storage_set")
    if extra_import:
        builder.import_function(HOST_MODULE, extra_import, [], [])
    builder.add_function("bump", [I64], [I64], """
        i64.const 0
        i64.const 0
        call $storage_get
        local.get 0
        i64.add
        call $storage_set
        i64.const 0
        call $storage_get
    """)
    return builder.build()


def _caller() -> bytes:
    builder = ModuleBuilder()
    _imports(builder, "create_contract", "invoke", "storage_has", "current_address", "assume", "log")
    target = builder.add_global(I64, 0)
    builder.add_data(0, b"bump")
    builder.add_function("init", [I64], [], f"""
        i64.const {TARGET}
        local.get 0
        call $create_contract
        global.set {target}
    """)
    invoke = f"""
        global.get {target}
        i32.const 0
        i32.const 4
        i32.const 16
        i32.const 1
        call $invoke
    """
    builder.add_function("test_bump", [I64], [I64], f"""
        i32.const 16
        local.get 0
        i64.store
        {invoke}
        local.get 0
        i64.eq
        i64.extend_i32_u
    """)
    builder.add_function("test_partition", [], [I32], f"""
        {invoke}
        drop
        i64.const 0
        call $storage_has
        i32.eqz
    """)
    builder.add_function("test_missing_target", [], [I32], """
        i64.const 0x999
        i32.const 0
        i32.const 4
        i32.const 16
        i32.const 1
        call $invoke
        i32.wrap_i64
    """)
    builder.add_function("test_redeploy", [], [I32], f"""
        i64.const {TARGET}
        i64.const 0x0B
        call $create_contract
        i32.wrap_i64
    """)
    builder.add_function("test_bad_handle", [], [I32], """
        i64.const 0x200
        i64.const 0x7F0B
        call $create_contract
        i32.wrap_i64
    """)
    builder.add_function("test_assume", [I32], [I32], """
        local.get 0
        i32.const 10
        i32.lt_u
        call $assume
        i32.const 1
    """)
    builder.add_function("test_log", [], [I32], """
        i32.const 0
        i32.const 4
        call $log
        call $current_address
        i64.const 0x7E57
        i64.eq
    """)
    return builder.build()


def _session(counter: bytes | None = None) -> TestSession:
    return TestSession.from_bytes(_caller(), [("counter", counter or _counter())])


def _run(session: TestSession, name: str, *args: int):
    test = session.select(name)[0]
    state = session.execute(test, list(args))
    return state, session.verdict_of(state)


def test_invoke_runs_the_deployed_contract():
    session = _session()
    state, verdict = _run(session, "test_bump", 5)
    assert verdict.kind == VerdictKind.PASSED
    assert state.storage[TARGET].entries[0] == Concrete(5, 64)
    assert [call.name for call in state.host_calls][-2:] == ["storage_set", "storage_get"]


def test_each_test_starts_from_the_init_state():
    session = _session()
    _run(session, "test_bump", 7)
    state, verdict = _run(session, "test_bump", 9)
    assert verdict.kind == VerdictKind.PASSED
    assert state.storage[TARGET].entries[0] == Concrete(9, 64)


def test_storage_is_partitioned_by_address():
    state, verdict = _run(_session(), "test_partition")
    assert verdict.kind == VerdictKind.PASSED
    assert state.storage[TEST_ADDRESS].entries == {}


def test_invoke_of_missing_address_fails():
    _, verdict = _run(_session(), "test_missing_target")
    assert verdict.kind == VerdictKind.FAILED
    assert verdict.reason == "InvocationError"
    assert "no contract deployed at 0x999" in verdict.detail


def test_deploying_twice_at_one_address_fails():
    _, verdict = _run(_session(), "test_redeploy")
    assert verdict.kind == VerdictKind.FAILED
    assert verdict.reason == "DeploymentError"
    assert "already occupied" in verdict.detail


def test_deploying_an_invalid_handle_fails():
    _, verdict = _run(_session(), "test_bad_handle")
    assert verdict.reason == "DeploymentError"
    assert "invalid module hash handle" in verdict.detail


def test_contract_with_unknown_import_fails_in_init():
    session = _session(_counter(extra_import="launch"))
    state, verdict = _run(session, "test_partition")
    assert state.status == Status.FAILED
    assert verdict.reason == "DeploymentError"
    assert verdict.detail.startswith("init: ")


def test_assume_rejects_examples():
    session = _session()
    state, verdict = _run(session, "test_assume", 50)
    assert state.status == Status.REJECTED
    assert verdict is None
    _, verdict = _run(session, "test_assume", 3)
    assert verdict.kind == VerdictKind.PASSED


def test_log_and_current_address():
    state, verdict = _run(_session(), "test_log")
    assert verdict.kind == VerdictKind.PASSED
    log_call = next(call for call in state.host_calls if call.name == "log")
    assert log_call.result == "'bump'"
    assert log_call.address == TEST_ADDRESS


@pytest.mark.parametrize(
    "name, params, results",
    [
        ("launch_missiles", [], []),
        ("storage_get", [I32], [I64]),
    ],
)
def test_test_contract_imports_are_checked_up_front(name, params, results):
    builder = ModuleBuilder()
    builder.import_function(HOST_MODULE, name, params, results)
    builder.add_function("test_x", [], [I32], "i32.const 1")
    with pytest.raises(ConfigurationError, match="test contract"):
        TestSession.from_bytes(builder.build())


def _symbolic_host() -> bytes:
    builder = ModuleBuilder()
    _imports(builder, "storage_get", "storage_set", "invoke", "create_contract")
    builder.add_function("test_storage_round_trip", [I64, I64], [I32], """
        local.get 0
        local.get 1
        call $storage_set
        local.get 0
        call $storage_get
        local.get 1
        i64.eq
    """)
    builder.add_function("test_storage_keys_differ", [I64, I64], [I32], """
        local.get 0
        i64.const 1
        call $storage_set
        local.get 1
        call $storage_get
        i64.eqz
    """)
    builder.add_function("test_invoke_anywhere", [I64], [I32], """
        local.get 0
        i32.const 0
        i32.const 0
        i32.const 0
        i32.const 0
        call $invoke
        drop
        i32.const 1
    """)
    builder.add_function("test_deploy_anywhere", [I64], [I32], """
        local.get 0
        i64.const 0x0B
        call $create_contract
        i32.wrap_i64
    """)
    builder.add_function("test_add32", [I32, I32], [I32], """
        local.get 0
        local.get 1
        i32.add
        drop
        i32.const 1
    """)
    for name, middle in (("test_table_ok", 1), ("test_table_bad", 0)):
        builder.add_function(name, [I32], [I32], f"""
            block
              block
                block
                  local.get 0
                  br_table 0 1 2
                end
                i32.const 1
                return
              end
              i32.const {middle}
              return
            end
            i32.const 1
        """)
    return builder.build()


def _prove(name: str, **config):
    session = TestSession.from_bytes(_symbolic_host(), [("counter", _counter())], config=EngineConfig(**config))
    return session.prove(session.select(name)[0])


def test_symbolic_storage_round_trip_is_proved():
    result, _ = _prove("test_storage_round_trip")
    assert result.verdict.kind == VerdictKind.PASSED
    assert result.exhaustive


def test_symbolic_storage_read_finds_the_aliasing_key():
    result, _ = _prove("test_storage_keys_differ")
    assert result.verdict.kind == VerdictKind.FAILED
    witness = result.verdict.witness
    assert witness["arg0"] == witness["arg1"]
    assert result.verdict.confirmed is True


@pytest.mark.parametrize("name", ["test_invoke_anywhere", "test_deploy_anywhere"])
def test_symbolic_contract_address_is_stuck_with_witness(name):
    result, tree = _prove(name)
    assert result.verdict.kind == VerdictKind.STUCK
    assert result.verdict.reason == "NonConcreteAddress"
    assert set(result.verdict.witness) == {"arg0"}
    assert not result.exhaustive
    assert list(tree.config["contracts"]) == ["counter"]


def test_checked_add_forks_into_a_trap():
    result, _ = _prove("test_add32", arithmetic="checked")
    assert result.verdict.kind == VerdictKind.FAILED
    assert result.verdict.reason == "Trap"
    witness = result.verdict.witness
    assert witness["arg0"] + witness["arg1"] >= 1 << 32
    assert result.verdict.confirmed is True

    result, _ = _prove("test_add32")
    assert result.verdict.kind == VerdictKind.PASSED


def test_symbolic_br_table_explores_every_target():
    result, _ = _prove("test_table_ok")
    assert result.verdict.kind == VerdictKind.PASSED
    assert result.paths == 3

    result, _ = _prove("test_table_bad")
    assert result.verdict.kind == VerdictKind.FAILED
    assert result.verdict.witness == {"arg0": 1}
