"""Engine configuration.

Values are layered: dataclass defaults, then the manifest's ``config`` block,
then command-line options. Only non-``None`` overrides are applied.
"""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any

from .errors import ConfigurationError

__all__ = ["ARITHMETIC_POLICIES", "EXPLORATION_STRATEGIES", "EngineConfig"]

ARITHMETIC_POLICIES = ("wrapping", "checked")
EXPLORATION_STRATEGIES = ("dfs", "bfs")


@dataclass(slots=True, frozen=True)
class EngineConfig:
    # fuzz mode
    max_examples: int = 100
    seed: int = 0

    # shared budgets
    max_steps: int = 200_000
    max_call_depth: int = 256

    # prove mode
    max_depth: int = 64
    max_paths: int = 1024
    max_loop_iterations: int = 128
    solver_timeout: int = 10_000
    timeout: float | None = None
    strategy: str = "dfs"
    verify_witness: bool = True

    arithmetic: str = "wrapping"
    test_prefixes: tuple[str, ...] = ("test_",)
    workers: int = 1

    def __post_init__(self) -> None:
        for name in ("max_examples", "max_steps", "max_call_depth", "max_depth", "max_paths",
                     "max_loop_iterations", "solver_timeout", "workers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"'{name}' must be a positive integer, got {value!r}")
        if self.timeout is not None and (not isinstance(self.timeout, (int, float)) or self.timeout <= 0):
            raise ConfigurationError(f"'timeout' must be a positive number of seconds, got {self.timeout!r}")
        if self.strategy not in EXPLORATION_STRATEGIES:
            raise ConfigurationError(
                f"Invalid strategy '{self.strategy}'. Allowed: {', '.join(EXPLORATION_STRATEGIES)}."
            )
        if self.arithmetic not in ARITHMETIC_POLICIES:
            raise ConfigurationError(
                f"Invalid arithmetic policy '{self.arithmetic}'. Allowed: {', '.join(ARITHMETIC_POLICIES)}."
            )
        if not self.test_prefixes or not all(isinstance(p, str) and p for p in self.test_prefixes):
            raise ConfigurationError("'test_prefixes' must be a non-empty list of non-empty strings")

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> EngineConfig:
        return cls().merged(**payload)

    def merged(self, **overrides: Any) -> EngineConfig:
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration key(s): {', '.join(unknown)}")
        applied = {key: value for key, value in overrides.items() if value is not None}
        if "test_prefixes" in applied:
            prefixes = applied["test_prefixes"]
            applied["test_prefixes"] = (prefixes,) if isinstance(prefixes, str) else tuple(prefixes)
        try:
            return replace(self, **applied)
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc

    def to_dict(self) -> dict[str, Any]:
        payload = {f.name: getattr(self, f.name) for f in fields(self)}
        payload["test_prefixes"] = list(self.test_prefixes)
        return payload
