"""Report generator - JSON, Markdown and rich output."""
from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from ..engine.session import TestResult
from ..proof.tree import PathNode, ProofTree, VerdictKind

__all__ = ["VERDICT_STYLES", "ReportGenerator", "render_proof_tree"]

VERDICT_STYLES: dict[VerdictKind, str] = {
    VerdictKind.PASSED: "green",
    VerdictKind.FAILED: "red",
    VerdictKind.STUCK: "yellow",
    VerdictKind.INFEASIBLE: "bright_black",
}

_VERDICT_RANK: dict[VerdictKind, int] = {
    VerdictKind.FAILED: 0,
    VerdictKind.STUCK: 1,
    VerdictKind.INFEASIBLE: 2,
    VerdictKind.PASSED: 3,
}

_CONSTRAINT_WIDTH = 96


def _clip(text: str, width: int = _CONSTRAINT_WIDTH) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


class ReportGenerator:
    def __init__(self, project_name: str = "unknown") -> None:
        self.project_name = project_name

    @staticmethod
    def _sorted_results(results: Sequence[TestResult]) -> list[TestResult]:
        return sorted(results, key=lambda r: (_VERDICT_RANK.get(r.verdict.kind, 99), r.name))

    @staticmethod
    def summary(results: Sequence[TestResult]) -> dict[str, int]:
        counts = {kind.value: 0 for kind in VerdictKind}
        for result in results:
            counts[result.verdict.kind.value] += 1
        return counts

    def to_dict(self, results: Sequence[TestResult]) -> dict[str, Any]:
        """Serialize test results into a structured report dictionary."""
        ordered = self._sorted_results(results)
        return {
            "project": self.project_name,
            "timestamp": datetime.now(UTC).isoformat(),
            "summary": self.summary(ordered),
            "total": len(ordered),
            "results": [result.to_dict() for result in ordered],
        }

    def to_json(self, results: Sequence[TestResult]) -> str:
        """Return the report as a pretty-printed JSON string."""
        return json.dumps(self.to_dict(results), indent=2)

    @staticmethod
    def _markdown_table(headers: list[str], rows: list[list[str]]) -> list[str]:
        sep = "|".join("-" * max(len(h), 3) for h in headers)
        lines = [
            "| " + " | ".join(headers) + " |",
            "|" + sep + "|",
        ]
        for row in rows:
            lines.append("| " + " | ".join(row) + " |")
        return lines

    @staticmethod
    def _guarantee(result: TestResult) -> str:
        if result.mode == "fuzz":
            return f"{result.examples} examples (not exhaustive)"
        return "exhaustive" if result.exhaustive else "budget-limited"

    def to_markdown(self, results: Sequence[TestResult]) -> str:
        """Render the report as a Markdown document."""
        d = self.to_dict(results)
        ordered = self._sorted_results(results)
        lines = [
            f"# Verification Report: {self.project_name}",
            f"\nGenerated: {d['timestamp']}\n",
            "## Summary\n",
        ]
        lines.extend(self._markdown_table(
            ["Verdict", "Count"],
            [[kind.value.capitalize(), str(d["summary"][kind.value])] for kind in VerdictKind],
        ))
        lines.append(f"\n**Total tests: {d['total']}**\n")
        lines.append("## Tests\n")
        lines.extend(self._markdown_table(
            ["Test", "Mode", "Verdict", "Coverage"],
            [[r.name, r.mode, r.verdict.describe(), self._guarantee(r)] for r in ordered],
        ))
        lines.append("")
        for result in ordered:
            if result.verdict.kind not in (VerdictKind.FAILED, VerdictKind.STUCK):
                continue
            verdict = result.verdict
            lines.append(f"### {result.name}")
            lines.append(f"\n- **Verdict:** {verdict.kind.value.capitalize()}")
            if verdict.reason:
                lines.append(f"- **Reason:** {verdict.reason}")
            if verdict.detail:
                lines.append(f"- **Detail:** {verdict.detail}")
            if verdict.witness:
                witness = ", ".join(f"`{name} = {value}`" for name, value in verdict.witness.items())
                lines.append(f"- **Witness:** {witness}")
            if verdict.confirmed is False:
                lines.append("- **Replay:** the witness did not reproduce the failure concretely")
            if result.first_failure and result.first_failure != verdict.witness:
                first = ", ".join(f"{name} = {value}" for name, value in result.first_failure.items())
                lines.append(f"- **First failing example:** {first}")
            if result.counts:
                counts = ", ".join(f"{kind}: {count}" for kind, count in result.counts.items() if count)
                lines.append(f"- **Leaves:** {counts}")
            if result.proof_path:
                lines.append(f"- **Proof:** `{result.proof_path}`")
            lines.append("")
        return "\n".join(lines)

    def to_table(self, results: Sequence[TestResult], title: str = "Test Results") -> Table:
        table = Table(title=title)
        table.add_column("Verdict", style="bold")
        table.add_column("Test")
        table.add_column("Mode")
        table.add_column("Coverage")
        table.add_column("Details")
        table.add_column("Time", justify="right")
        for result in results:
            verdict = result.verdict
            style = VERDICT_STYLES[verdict.kind]
            details = []
            if verdict.reason:
                details.append(verdict.reason)
            if verdict.witness:
                details.append(", ".join(f"{name}={value}" for name, value in verdict.witness.items()))
            if verdict.detail and verdict.kind == VerdictKind.STUCK:
                details.append(_clip(verdict.detail, 60))
            table.add_row(
                f"[{style}]{verdict.kind.value.upper()}[/]",
                result.name,
                result.mode,
                self._guarantee(result),
                escape("; ".join(details)) or "-",
                f"{result.elapsed:.2f}s",
            )
        return table


def _node_text(node: PathNode) -> str:
    parts: list[str] = []
    if node.constraint is not None:
        parts.append(f"[cyan]{escape(_clip(node.constraint))}[/]")
    if node.label is not None and node.parent is not None:
        parts.append(f"[dim]{escape(node.label)}[/]")
    if node.verdict is not None:
        style = VERDICT_STYLES[node.verdict.kind]
        parts.append(f"[{style}]{escape(node.verdict.describe())}[/]")
    elif node.is_leaf:
        parts.append("[magenta]open[/]")
    if node.result is not None:
        parts.append(f"returned {escape(node.result)}")
    return "  ".join(parts) or f"#{node.id}"


def render_proof_tree(tree: ProofTree, *, show_host_calls: bool = False) -> Tree:
    """Build a ``rich`` tree mirroring the stored branch structure."""
    verdict = tree.verdict()
    style = VERDICT_STYLES[verdict.kind]
    heading = (
        f"[bold]{escape(tree.test)}[/] [dim]{tree.module_hash[:16]}[/]  "
        f"[{style}]{escape(verdict.describe())}[/]"
    )
    if tree.truncated:
        heading += f"  [yellow](truncated: {escape(tree.truncation_reason or 'budget')})[/]"
    root = Tree(heading)
    contracts = tree.config.get("contracts")
    if contracts:
        deployed = root.add("[dim]contracts[/]")
        for name, digest in contracts.items():
            deployed.add(f"{escape(name)} [dim]{digest[:16]}[/]")

    pending: list[tuple[Tree, PathNode]] = [(root, tree.root)]
    while pending:
        branch, node = pending.pop()
        target = branch if node.id == tree.root.id else branch.add(_node_text(node))
        if node.id == tree.root.id and node.is_leaf:
            target.add(_node_text(node))
        if show_host_calls and node.host_calls:
            calls = target.add("[dim]host calls[/]")
            for call in node.host_calls:
                calls.add(escape(call))
        for child_id in reversed(node.children):
            pending.append((target, tree.node(child_id)))
    return root
