"""Proof trees: the explored branches of one test and their leaf verdicts."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

__all__ = ["PathNode", "ProofTree", "Verdict", "VerdictKind"]


class VerdictKind(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    STUCK = "stuck"
    INFEASIBLE = "infeasible"


@dataclass(slots=True, frozen=True)
class Verdict:
    kind: VerdictKind
    reason: str | None = None
    detail: str | None = None
    witness: dict[str, int] | None = None
    confirmed: bool | None = None

    @classmethod
    def passed(cls) -> Verdict:
        return cls(VerdictKind.PASSED)

    @classmethod
    def failed(
        cls,
        reason: str,
        detail: str | None = None,
        witness: dict[str, int] | None = None,
        confirmed: bool | None = None,
    ) -> Verdict:
        return cls(VerdictKind.FAILED, reason, detail, witness, confirmed)

    @classmethod
    def stuck(cls, reason: str, detail: str | None = None, witness: dict[str, int] | None = None) -> Verdict:
        return cls(VerdictKind.STUCK, reason, detail, witness)

    @classmethod
    def infeasible(cls, detail: str | None = None) -> Verdict:
        return cls(VerdictKind.INFEASIBLE, detail=detail)

    def describe(self) -> str:
        text = self.kind.value.capitalize()
        if self.reason:
            text = f"{text}({self.reason})"
        if self.witness:
            text += " " + ", ".join(f"{name} = {value}" for name, value in self.witness.items())
        return text

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value}
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.detail is not None:
            payload["detail"] = self.detail
        if self.witness is not None:
            payload["witness"] = dict(self.witness)
        if self.confirmed is not None:
            payload["confirmed"] = self.confirmed
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Verdict:
        witness = payload.get("witness")
        return cls(
            kind=VerdictKind(payload["kind"]),
            reason=payload.get("reason"),
            detail=payload.get("detail"),
            witness={str(k): int(v) for k, v in witness.items()} if witness is not None else None,
            confirmed=payload.get("confirmed"),
        )


@dataclass(slots=True)
class PathNode:
    id: int
    parent: int | None = None
    constraint: str | None = None
    label: str | None = None
    children: list[int] = field(default_factory=list)
    verdict: Verdict | None = None
    result: str | None = None
    steps: int = 0
    host_calls: list[str] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "parent": self.parent, "children": list(self.children)}
        if self.constraint is not None:
            payload["constraint"] = self.constraint
        if self.label is not None:
            payload["label"] = self.label
        if self.verdict is not None:
            payload["verdict"] = self.verdict.to_dict()
        if self.result is not None:
            payload["result"] = self.result
        if self.steps:
            payload["steps"] = self.steps
        if self.host_calls:
            payload["host_calls"] = list(self.host_calls)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PathNode:
        verdict = payload.get("verdict")
        return cls(
            id=int(payload["id"]),
            parent=payload.get("parent"),
            constraint=payload.get("constraint"),
            label=payload.get("label"),
            children=[int(c) for c in payload.get("children", [])],
            verdict=Verdict.from_dict(verdict) if verdict is not None else None,
            result=payload.get("result"),
            steps=int(payload.get("steps", 0)),
            host_calls=list(payload.get("host_calls", [])),
        )


@dataclass(slots=True)
class ProofTree:
    """Arena of :class:`PathNode` objects indexed by id; node 0 is the root.

    Every non-root node stores the single constraint that distinguishes it
    from its parent, rendered as SMT-LIB text.
    """

    test: str
    module_hash: str
    nodes: list[PathNode] = field(default_factory=list)
    truncated: bool = False
    truncation_reason: str | None = None
    config: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.nodes:
            self.nodes.append(PathNode(id=0, label=self.test))

    @property
    def root(self) -> PathNode:
        return self.nodes[0]

    def node(self, node_id: int) -> PathNode:
        return self.nodes[node_id]

    def add_node(self, parent: int, constraint: str | None = None, label: str | None = None) -> PathNode:
        node = PathNode(id=len(self.nodes), parent=parent, constraint=constraint, label=label)
        self.nodes.append(node)
        self.nodes[parent].children.append(node.id)
        return node

    def path_to(self, node_id: int) -> list[PathNode]:
        path: list[PathNode] = []
        current: int | None = node_id
        while current is not None:
            node = self.nodes[current]
            path.append(node)
            current = node.parent
        return list(reversed(path))

    def leaves(self) -> list[PathNode]:
        return [node for node in self.nodes if node.is_leaf]

    def counts(self) -> dict[str, int]:
        counter = Counter(
            node.verdict.kind.value if node.verdict is not None else "open" for node in self.leaves()
        )
        return {kind: counter.get(kind, 0) for kind in [*(k.value for k in VerdictKind), "open"]}

    @property
    def exhaustive(self) -> bool:
        """Every leaf resolved to Passed or Infeasible and no budget cut exploration short."""
        if self.truncated:
            return False
        return all(
            node.verdict is not None and node.verdict.kind in (VerdictKind.PASSED, VerdictKind.INFEASIBLE)
            for node in self.leaves()
        )

    def verdict(self) -> Verdict:
        """Aggregate leaf verdicts: any Failed wins, then any Stuck or truncation, else Passed."""
        leaves = self.leaves()
        for node in leaves:
            if node.verdict is not None and node.verdict.kind == VerdictKind.FAILED:
                return node.verdict
        for node in leaves:
            if node.verdict is not None and node.verdict.kind == VerdictKind.STUCK:
                return node.verdict
        if self.truncated or any(node.verdict is None for node in leaves):
            return Verdict.stuck("BudgetExceeded", self.truncation_reason or "exploration incomplete")
        if all(node.verdict.kind == VerdictKind.INFEASIBLE for node in leaves):
            return Verdict.stuck("NoFeasiblePath", "every explored path was infeasible")
        return Verdict.passed()

    def failing_leaf(self) -> PathNode | None:
        for node in self.leaves():
            if node.verdict is not None and node.verdict.kind == VerdictKind.FAILED:
                return node
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "test": self.test,
            "module_hash": self.module_hash,
            "truncated": self.truncated,
            "truncation_reason": self.truncation_reason,
            "config": dict(self.config),
            "nodes": [node.to_dict() for node in self.nodes],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProofTree:
        return cls(
            test=payload["test"],
            module_hash=payload["module_hash"],
            nodes=[PathNode.from_dict(node) for node in payload.get("nodes", [])],
            truncated=bool(payload.get("truncated", False)),
            truncation_reason=payload.get("truncation_reason"),
            config=dict(payload.get("config", {})),
        )
