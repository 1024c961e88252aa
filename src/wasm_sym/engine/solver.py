"""Constraint manager: feasibility checks, witnesses and concretization."""
from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from enum import StrEnum

import z3

from ..errors import NonConcreteValue, SolverTimeout
from .state import Domain, MachineState
from .values import Symbolic

__all__ = ["ConstraintManager", "SolverResult"]

logger = logging.getLogger(__name__)


class SolverResult(StrEnum):
    SAT = "sat"
    UNSAT = "unsat"
    UNKNOWN = "unknown"


def _outcome(result: z3.CheckSatResult) -> SolverResult:
    # CheckSatResult defines __eq__ without __hash__, so it cannot key a dict
    if result == z3.sat:
        return SolverResult.SAT
    if result == z3.unsat:
        return SolverResult.UNSAT
    return SolverResult.UNKNOWN


class ConstraintManager:
    """Wraps z3 with a per-query timeout (milliseconds).

    Every query builds a fresh solver, so results never depend on the order in
    which sibling branches were checked.
    """

    def __init__(self, timeout_ms: int = 10_000) -> None:
        self.timeout_ms = timeout_ms
        self.queries = 0
        # Monotonic time after which queries get no more than a token timeout.
        self.deadline: float | None = None

    def _timeout(self) -> int:
        if self.deadline is None:
            return self.timeout_ms
        remaining = int((self.deadline - time.monotonic()) * 1000)
        return max(1, min(self.timeout_ms, remaining))

    def _solver(self, constraints: Iterable[z3.BoolRef]) -> z3.Solver:
        solver = z3.Solver()
        solver.set("timeout", self._timeout())
        for constraint in constraints:
            solver.add(constraint)
        self.queries += 1
        return solver

    def check_feasible(self, constraints: Iterable[z3.BoolRef]) -> SolverResult:
        result = self._solver(constraints).check()
        outcome = _outcome(result)
        if outcome == SolverResult.UNKNOWN:
            logger.debug("solver returned unknown")
        return outcome

    def check_state(self, state: MachineState, *extra: z3.BoolRef) -> SolverResult:
        return self.check_feasible([*state.constraint_terms(), *extra])

    def solve_witness(
        self,
        constraints: Iterable[z3.BoolRef],
        variables: Mapping[str, Domain],
    ) -> tuple[SolverResult, dict[str, int] | None]:
        """Solve *constraints* and read back a value for every declared variable."""
        solver = self._solver(constraints)
        result = solver.check()
        outcome = _outcome(result)
        if outcome != SolverResult.SAT:
            return outcome, None
        model = solver.model()
        witness: dict[str, int] = {}
        for name, domain in variables.items():
            value = model.eval(z3.BitVec(name, domain.bits), model_completion=True)
            number = value.as_long()
            if domain.low is not None and domain.low < 0 and number >= 1 << (domain.bits - 1):
                number -= 1 << domain.bits
            witness[name] = number
        return outcome, witness

    def witness_for(self, state: MachineState, *extra: z3.BoolRef) -> tuple[SolverResult, dict[str, int] | None]:
        return self.solve_witness([*state.constraint_terms(), *extra], state.variables)

    def concretize(self, state: MachineState, value: Symbolic, reason: str = "SymbolicAddress") -> int:
        """Return the only value *value* can take on this path.

        Raises :class:`NonConcreteValue` naming two distinct feasible values
        when the path condition does not pin it down, and :class:`SolverTimeout`
        when z3 cannot decide.
        """
        solver = self._solver(state.constraint_terms())
        outcome = _outcome(solver.check())
        if outcome == SolverResult.UNKNOWN:
            raise SolverTimeout(f"solver gave up concretizing {value.term}")
        if outcome == SolverResult.UNSAT:
            raise NonConcreteValue(f"cannot concretize {value.term} on this path", reason=reason)
        first = solver.model().eval(value.term, model_completion=True).as_long()
        solver.add(value.term != z3.BitVecVal(first, value.bits))
        verdict = _outcome(solver.check())
        if verdict == SolverResult.UNSAT:
            return first
        if verdict == SolverResult.SAT:
            second = solver.model().eval(value.term, model_completion=True).as_long()
            raise NonConcreteValue(
                f"value {value.term} is not unique on this path (e.g. {first} or {second})", reason=reason
            )
        raise SolverTimeout(f"solver gave up deciding whether {value.term} is unique")
