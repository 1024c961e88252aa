"""Tests for report output consistency."""
from __future__ import annotations

import json

from rich.console import Console

from wasm_sym.engine.session import TestResult
from wasm_sym.proof.tree import ProofTree, Verdict
from wasm_sym.report.generator import ReportGenerator, render_proof_tree


def _results() -> list[TestResult]:
    return [
        TestResult(name="test_ok", mode="prove", verdict=Verdict.passed(), module_hash="aa", exhaustive=True, paths=3),
        TestResult(
            name="test_overflow",
            mode="prove",
            verdict=Verdict.failed("Falsified", "test returned 0", {"arg0": 4294967295, "arg1": 1}, True),
            module_hash="aa",
            paths=2,
            counts={"passed": 1, "failed": 1},
            proof_path=".wasm-sym/proofs/aa/test_overflow.json",
        ),
        TestResult(
            name="test_spin",
            mode="fuzz",
            verdict=Verdict.stuck("BudgetExceeded", "step budget exhausted"),
            module_hash="aa",
            examples=40,
        ),
    ]


def _render(renderable) -> str:
    console = Console(width=200, record=True)
    console.print(renderable)
    return console.export_text()


def test_report_summary_counts():
    report = ReportGenerator("Token").to_dict(_results())
    assert report["project"] == "Token"
    assert report["summary"] == {"passed": 1, "failed": 1, "stuck": 1, "infeasible": 0}
    assert report["total"] == 3
    assert [r["name"] for r in report["results"]] == ["test_overflow", "test_spin", "test_ok"]


def test_json_report_round_trips_results():
    payload = json.loads(ReportGenerator("Token").to_json(_results()))
    restored = [TestResult.from_dict(raw) for raw in payload["results"]]
    failed = restored[0]
    assert failed.verdict.witness == {"arg0": 4294967295, "arg1": 1}
    assert failed.verdict.confirmed is True
    assert failed.proof_path.endswith("test_overflow.json")


def test_markdown_lists_witnesses_and_guarantees():
    markdown = ReportGenerator("Token").to_markdown(_results())
    assert "# Verification Report: Token" in markdown
    assert "## Summary" in markdown
    assert "### test_overflow" in markdown
    assert "`arg0 = 4294967295`" in markdown
    assert "### test_spin" in markdown
    assert "40 examples (not exhaustive)" in markdown
    assert "| test_ok | prove | Passed | exhaustive |" in markdown
    assert "### test_ok" not in markdown


def test_table_shows_verdicts_and_coverage():
    text = _render(ReportGenerator("Token").to_table(_results()))
    assert "FAILED" in text
    assert "arg0=4294967295, arg1=1" in text
    assert "budget-limited" in text


def test_proof_tree_rendering():
    tree = ProofTree(test="test_x", module_hash="ab" * 32)
    taken = tree.add_node(0, "(bvult arg0 #x0000000a)", "test_x @ 0x10")
    other = tree.add_node(0, "(not (bvult arg0 #x0000000a))", "test_x @ 0x10")
    taken.verdict = Verdict.passed()
    other.verdict = Verdict.failed("Trap", "integer divide by zero", {"arg0": 10})
    other.host_calls = ["log('hi') @ 0x7e57"]

    text = _render(render_proof_tree(tree, show_host_calls=True))
    assert "test_x" in text
    assert "(bvult arg0 #x0000000a)" in text
    assert "Failed(Trap) arg0 = 10" in text
    assert "log('hi')" in text
    assert "host calls" not in _render(render_proof_tree(tree))


def test_proof_tree_lists_deployed_contracts():
    tree = ProofTree(test="test_x", module_hash="ab" * 32, config={"contracts": {"adder": "cd" * 32}})
    tree.root.verdict = Verdict.passed()
    text = _render(render_proof_tree(tree))
    assert "contracts" in text
    assert "adder " + "cd" * 8 in text
    assert "contracts" not in _render(render_proof_tree(ProofTree(test="test_x", module_hash="ab" * 32)))
