"""Proof trees and their on-disk store."""

from __future__ import annotations

from .store import DEFAULT_PROOF_DIR, FORMAT_VERSION, ProofStore
from .tree import PathNode, ProofTree, Verdict, VerdictKind

__all__ = [
    "DEFAULT_PROOF_DIR",
    "FORMAT_VERSION",
    "PathNode",
    "ProofStore",
    "ProofTree",
    "Verdict",
    "VerdictKind",
]
