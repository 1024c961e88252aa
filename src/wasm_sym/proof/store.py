"""On-disk proof artifacts, one JSON file per (module hash, test id)."""
from __future__ import annotations

import json
import logging
import os
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..errors import ProofNotFound, WasmSymError
from .tree import ProofTree

__all__ = ["FORMAT_VERSION", "ProofStore"]

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
DEFAULT_PROOF_DIR = ".wasm-sym/proofs"

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _file_name(test: str) -> str:
    return _UNSAFE.sub("_", test) + ".json"


class ProofStore:
    """Proofs live at ``<root>/<module hash>/<test>.json``.

    Saving replaces an existing artifact wholesale; artifacts are never
    edited in place.
    """

    def __init__(self, root: Path | str = DEFAULT_PROOF_DIR) -> None:
        self.root = Path(root)

    def path_for(self, module_hash: str, test: str) -> Path:
        return self.root / module_hash / _file_name(test)

    def save(self, tree: ProofTree) -> Path:
        path = self.path_for(tree.module_hash, tree.test)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "format": FORMAT_VERSION,
            "saved_at": datetime.now(UTC).isoformat(),
            "tree": tree.to_dict(),
        }
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True))
        os.replace(tmp, path)
        logger.debug("saved proof %s", path)
        return path

    def load(self, module_hash: str, test: str) -> ProofTree:
        path = self.path_for(module_hash, test)
        if not path.is_file():
            raise ProofNotFound(f"no proof for '{test}' under module {module_hash[:16]}")
        return self.load_path(path)

    @staticmethod
    def load_path(path: Path | str) -> ProofTree:
        source = Path(path)
        try:
            payload: Any = json.loads(source.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise WasmSymError(f"Cannot read proof {source}: {exc}") from exc
        if not isinstance(payload, dict) or payload.get("format") != FORMAT_VERSION:
            raise WasmSymError(f"Unsupported proof format in {source}")
        return ProofTree.from_dict(payload["tree"])

    def entries(self) -> list[tuple[str, str, Path]]:
        """``(module hash, test, path)`` for every stored proof, sorted."""
        if not self.root.is_dir():
            return []
        found: list[tuple[str, str, Path]] = []
        for module_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for path in sorted(module_dir.glob("*.json")):
                found.append((module_dir.name, path.stem, path))
        return found

    def find(self, test: str, module_hash: str | None = None) -> list[Path]:
        """Artifacts for *test*; a hash prefix narrows the search."""
        name = _file_name(test)[: -len(".json")]
        return [
            path
            for digest, stem, path in self.entries()
            if stem == name and (module_hash is None or digest.startswith(module_hash))
        ]
