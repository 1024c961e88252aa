"""Error taxonomy shared by the registry, interpreter, host bridge and engine.

Errors split into two families. Fatal errors (``ConfigurationError``,
``UnknownModule``, ``WasmDecodeError``) abort the whole run. State errors
terminate only the machine state that raised them; the interpreter converts
them into that state's terminal status, so sibling branches and other tests
keep running.
"""
from __future__ import annotations

__all__ = [
    "BudgetExceeded",
    "ConfigurationError",
    "DeploymentError",
    "InvocationError",
    "NonConcreteValue",
    "ProofNotFound",
    "SolverTimeout",
    "StateError",
    "Trap",
    "UnknownModule",
    "UnsupportedInstruction",
    "WasmDecodeError",
    "WasmSymError",
]


class WasmSymError(Exception):
    """Base class for every error raised by wasm-sym."""


class ConfigurationError(WasmSymError):
    """Invalid manifest, configuration key or command-line combination."""


class WasmDecodeError(WasmSymError, ValueError):
    """Malformed WebAssembly binary."""


class UnknownModule(WasmSymError, KeyError):
    """A module hash was looked up that the registry never saw."""

    def __init__(self, module_hash: bytes) -> None:
        super().__init__(module_hash)
        self.module_hash = module_hash

    def __str__(self) -> str:
        return f"unknown module {self.module_hash.hex()}"


class ProofNotFound(WasmSymError, LookupError):
    """No saved proof matches the requested module hash and test id."""


class StateError(WasmSymError):
    """An error that terminates a single machine state.

    ``stuck`` separates outcomes that say nothing about the property (the
    engine gave up) from outcomes that falsify it.
    """

    stuck = False
    reason = "error"

    def __init__(self, message: str, *, offset: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset


class Trap(StateError):
    """WebAssembly trap: unreachable, division by zero, out-of-bounds access."""

    reason = "Trap"


class DeploymentError(StateError):
    """``create_contract`` failed: address collision, unknown hash or bad imports."""

    reason = "DeploymentError"


class InvocationError(StateError):
    """Cross-contract call into a missing address or with a mismatched signature."""

    reason = "InvocationError"


class BudgetExceeded(StateError):
    stuck = True
    reason = "BudgetExceeded"


class SolverTimeout(StateError):
    stuck = True
    reason = "SolverTimeout"


class NonConcreteValue(StateError):
    """A value that must be concrete (address, memory index, table index) is symbolic."""

    stuck = True
    reason = "NonConcreteAddress"

    def __init__(self, message: str, *, offset: int | None = None, reason: str | None = None) -> None:
        super().__init__(message, offset=offset)
        if reason is not None:
            self.reason = reason


class UnsupportedInstruction(StateError):
    stuck = True
    reason = "UnsupportedInstruction"
