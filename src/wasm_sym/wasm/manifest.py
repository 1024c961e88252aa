"""Project manifest: which compiled artifacts take part in a test run."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import ConfigurationError
from .registry import ModuleHandle, ModuleRegistry

__all__ = ["DEFAULT_MANIFEST_NAME", "Manifest", "load_manifest", "parse_manifest"]

DEFAULT_MANIFEST_NAME = "wasm-sym.json"


@dataclass(slots=True)
class Manifest:
    name: str = "unknown"
    test: Path | None = None
    contracts: dict[str, Path] = field(default_factory=dict)
    domains: dict[str, list[tuple[int, int]]] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)

    def register_contracts(self, registry: ModuleRegistry) -> list[ModuleHandle]:
        """Register every contract artifact, in manifest order.

        The returned handles are what ``init`` receives, one bytes handle per
        contract, in this order.
        """
        handles: list[ModuleHandle] = []
        for contract_name, path in self.contracts.items():
            try:
                data = path.read_bytes()
            except OSError as exc:
                raise ConfigurationError(f"Cannot read contract '{contract_name}' from {path}: {exc}") from exc
            handles.append(registry.register(data, name=contract_name))
        return handles


def _parse_domains(raw: Any) -> dict[str, list[tuple[int, int]]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError("Manifest 'domains' must be an object mapping test names to bounds")
    domains: dict[str, list[tuple[int, int]]] = {}
    for test_name, bounds in raw.items():
        if not isinstance(bounds, list):
            raise ConfigurationError(f"Domains for '{test_name}' must be a list of [low, high] pairs")
        parsed: list[tuple[int, int]] = []
        for pair in bounds:
            if (
                not isinstance(pair, list)
                or len(pair) != 2
                or not all(isinstance(v, int) and not isinstance(v, bool) for v in pair)
            ):
                raise ConfigurationError(f"Invalid domain {pair!r} for '{test_name}'; expected [low, high]")
            low, high = pair
            if low > high:
                raise ConfigurationError(f"Empty domain [{low}, {high}] for '{test_name}'")
            parsed.append((low, high))
        domains[str(test_name)] = parsed
    return domains


def parse_manifest(raw_json: str, base_dir: Path | str = ".") -> Manifest:
    """Parse manifest JSON; artifact paths are resolved against *base_dir*."""
    try:
        payload = json.loads(raw_json)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid manifest JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError("Manifest root must be an object")

    base = Path(base_dir)
    raw_contracts = payload.get("contracts", {})
    if not isinstance(raw_contracts, dict):
        raise ConfigurationError("Manifest 'contracts' must be an object mapping names to .wasm paths")
    contracts = {str(name): base / str(path) for name, path in raw_contracts.items()}

    raw_test = payload.get("test")
    if raw_test is not None and not isinstance(raw_test, str):
        raise ConfigurationError("Manifest 'test' must be a path string")

    raw_config = payload.get("config", {})
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Manifest 'config' must be an object")

    raw_name = payload.get("name")
    return Manifest(
        name=raw_name if isinstance(raw_name, str) else "unknown",
        test=base / raw_test if raw_test else None,
        contracts=contracts,
        domains=_parse_domains(payload.get("domains")),
        config=dict(raw_config),
    )


def load_manifest(path: Path | str) -> Manifest:
    manifest_path = Path(path)
    try:
        raw = manifest_path.read_text()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read manifest {manifest_path}: {exc}") from exc
    return parse_manifest(raw, manifest_path.parent)
