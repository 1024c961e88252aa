"""CLI behavior tests."""
from __future__ import annotations

import json

from click.testing import CliRunner

from wasm_sym import __version__
from wasm_sym.cli import EXIT_CONFIGURATION, EXIT_FAILED, EXIT_PASSED, EXIT_STUCK, main
from wasm_sym.wasm.encoder import ModuleBuilder
from wasm_sym.wasm.parser import ValType

I32 = ValType.I32


def _adder_tests() -> bytes:
    builder = ModuleBuilder()
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
        local.get 0
        i32.ge_u
    """)
    return builder.build()


def _loop_tests() -> bytes:
    builder = ModuleBuilder()
    builder.add_function("test_count", [I32], [I32], """
        loop
          local.get 1
          i32.const 1
          i32.add
          local.tee 1
          local.get 0
          i32.lt_u
          br_if 0
        end
        i32.const 1
    """, locals=[I32])
    return builder.build()


def _project(tmp_path) -> str:
    (tmp_path / "tests.wasm").write_bytes(_adder_tests())
    manifest = tmp_path / "wasm-sym.json"
    manifest.write_text(json.dumps({"name": "demo", "test": "tests.wasm", "config": {"max_examples": 30}}))
    return str(manifest)


def _json(output: str) -> dict:
    return json.loads(output[output.index("{"):])


def test_cli_reports_package_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_fuzz_passes_selected_test(tmp_path):
    manifest = _project(tmp_path)
    result = CliRunner().invoke(main, ["-m", manifest, "test", "--id", "test_add_widened", "--format", "markdown"])
    assert result.exit_code == EXIT_PASSED, result.output
    assert "| test_add_widened | fuzz | Passed |" in result.output
    assert "examples (not exhaustive)" in result.output


def test_fuzz_failure_exits_with_failed_code(tmp_path):
    manifest = _project(tmp_path)
    result = CliRunner().invoke(main, ["-m", manifest, "test", "--format", "json", "--seed", "7"])
    assert result.exit_code == EXIT_FAILED, result.output
    report = _json(result.output)
    assert report["project"] == "demo"
    assert report["summary"]["failed"] == 1
    failed = report["results"][0]
    assert failed["name"] == "test_add_narrow"
    witness = failed["verdict"]["witness"]
    assert witness["arg0"] + witness["arg1"] >= 1 << 32


def test_prove_run_writes_proofs_and_view_renders_them(tmp_path):
    manifest = _project(tmp_path)
    proof_dir = tmp_path / "proofs"
    runner = CliRunner()

    result = runner.invoke(main, ["-m", manifest, "prove", "run", "--proof-dir", str(proof_dir)])
    assert result.exit_code == EXIT_FAILED, result.output
    assert "Proofs written to" in result.output
    assert len(list(proof_dir.glob("*/*.json"))) == 2

    view = runner.invoke(main, ["prove", "view", "test_add_narrow", "--proof-dir", str(proof_dir)])
    assert view.exit_code == 0, view.output
    assert "Failed(Falsified)" in view.output
    assert "Leaves:" in view.output

    raw = runner.invoke(main, ["prove", "view", "test_add_widened", "--proof-dir", str(proof_dir), "--json"])
    assert raw.exit_code == 0
    tree = _json(raw.output)
    assert tree["test"] == "test_add_widened"
    assert tree["nodes"][0]["verdict"]["kind"] == "passed"

    listing = runner.invoke(main, ["prove", "list", "--proof-dir", str(proof_dir)])
    assert listing.exit_code == 0
    assert "Saved Proofs" in listing.output


def test_prove_run_single_test_passes(tmp_path):
    manifest = _project(tmp_path)
    result = CliRunner().invoke(
        main,
        ["-m", manifest, "prove", "run", "--id", "test_add_widened", "--proof-dir", str(tmp_path / "p"),
         "--format", "markdown"],
    )
    assert result.exit_code == EXIT_PASSED, result.output
    assert "| test_add_widened | prove | Passed | exhaustive |" in result.output


def test_budget_limited_proof_exits_with_stuck_code(tmp_path):
    wasm = tmp_path / "loop.wasm"
    wasm.write_bytes(_loop_tests())
    result = CliRunner().invoke(
        main,
        ["-m", str(tmp_path / "absent.json"), "prove", "run", "--wasm", str(wasm),
         "--proof-dir", str(tmp_path / "p"), "--max-loop-iterations", "2"],
    )
    assert result.exit_code == EXIT_STUCK, result.output
    assert "STUCK" in result.output


def test_configuration_errors_exit_with_code_three(tmp_path):
    runner = CliRunner()
    missing = runner.invoke(main, ["-m", str(tmp_path / "none.json"), "test"])
    assert missing.exit_code == EXIT_CONFIGURATION

    manifest = _project(tmp_path)
    unknown = runner.invoke(main, ["-m", manifest, "test", "--id", "test_nope"])
    assert unknown.exit_code == EXIT_CONFIGURATION
    assert "test_nope" in unknown.output

    no_proof = runner.invoke(main, ["prove", "view", "test_nope", "--proof-dir", str(tmp_path / "empty")])
    assert no_proof.exit_code == EXIT_CONFIGURATION


def test_malformed_module_is_a_configuration_error(tmp_path):
    wasm = tmp_path / "broken.wasm"
    wasm.write_bytes(b"\x00asm\x01\x00\x00\x00\x07\x05\x01\x01f\x00\x00")
    result = CliRunner().invoke(main, ["-m", str(tmp_path / "absent.json"), "test", "--wasm", str(wasm)])
    assert result.exit_code == EXIT_CONFIGURATION
    assert "unknown func 0" in result.output
