"""Prove mode: systematic exploration of the symbolic state tree."""
from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable

import z3

from ..config import EngineConfig
from ..errors import NonConcreteValue
from ..proof.tree import PathNode, ProofTree, Verdict
from .interpreter import Interpreter
from .solver import ConstraintManager, SolverResult
from .state import MachineState, Status
from .values import is_zero, render

__all__ = ["Explorer"]

logger = logging.getLogger(__name__)

Frontier = list[tuple[MachineState, int]]


def render_constraint(condition: z3.BoolRef) -> str:
    return " ".join(condition.sexpr().split())


class Explorer:
    """Worklist exploration over forked machine states.

    Children of a fork are checked for feasibility before they are scheduled;
    infeasible ones become ``Infeasible`` leaves. Leaves that returned are
    judged by asking whether the path allows a zero (false) result.
    """

    def __init__(
        self,
        interpreter: Interpreter,
        solver: ConstraintManager,
        config: EngineConfig | None = None,
        replay: Callable[[dict[str, int]], bool] | None = None,
    ) -> None:
        self.interpreter = interpreter
        self.solver = solver
        self.config = config or interpreter.config
        self.replay = replay
        self.leaves = 0
        self.deadline: float | None = None

    def start_clock(self) -> None:
        self.leaves = 0
        self.deadline = time.monotonic() + self.config.timeout if self.config.timeout else None
        self.interpreter.deadline = self.deadline
        self.solver.deadline = self.deadline

    def explore(self, tree: ProofTree, frontier: Frontier, *, judge: bool = True) -> Frontier:
        """Explore every state in *frontier* under its node.

        With ``judge=False`` returned states are not judged; they are handed
        back (with their node ids) so a later phase can continue from them.
        """
        worklist = deque(frontier)
        returned: Frontier = []
        depth_first = self.config.strategy == "dfs"

        while worklist:
            if self.deadline is not None and time.monotonic() > self.deadline:
                self._truncate(tree, worklist, "Timeout", f"time budget of {self.config.timeout}s exhausted")
                break
            if self.leaves >= self.config.max_paths:
                self._truncate(tree, worklist, "BudgetExceeded", f"path budget of {self.config.max_paths} reached")
                break

            state, node_id = worklist.pop() if depth_first else worklist.popleft()
            successors = self.interpreter.run(state)
            if len(successors) == 1 and successors[0] is state:
                if self._settle(tree, tree.node(node_id), state, judge, returned):
                    logger.info("%s: counterexample found, stopping exploration", tree.test)
                    return returned
                continue

            scheduled: Frontier = []
            for child in successors:
                node = tree.add_node(node_id, render_constraint(child.path_condition[-1]), child.location)
                outcome = self.solver.check_state(child)
                if outcome == SolverResult.UNSAT:
                    self._leaf(node, child, Verdict.infeasible())
                elif outcome == SolverResult.UNKNOWN:
                    self._leaf(node, child, Verdict.stuck("SolverTimeout", "feasibility check returned unknown"))
                elif child.depth > self.config.max_depth:
                    self._leaf(node, child, Verdict.stuck(
                        "BudgetExceeded", f"fork depth limit of {self.config.max_depth} reached"
                    ))
                elif child.halted or not child.frames:
                    if self._settle(tree, node, child, judge, returned):
                        logger.info("%s: counterexample found, stopping exploration", tree.test)
                        return returned
                else:
                    scheduled.append((child, node.id))
            worklist.extend(reversed(scheduled) if depth_first else scheduled)
        return returned

    def _leaf(self, node: PathNode, state: MachineState, verdict: Verdict) -> None:
        node.verdict = verdict
        node.steps = state.steps
        node.host_calls = [str(record) for record in state.host_calls]
        self.leaves += 1

    def _truncate(self, tree: ProofTree, worklist: deque, reason: str, detail: str) -> None:
        tree.truncated = True
        tree.truncation_reason = detail
        logger.info("%s: %s, %d state(s) left unexplored", tree.test, detail, len(worklist))
        while worklist:
            state, node_id = worklist.popleft()
            node = tree.node(node_id)
            node.verdict = Verdict.stuck(reason, detail)
            node.steps = state.steps

    def _settle(self, tree: ProofTree, node: PathNode, state: MachineState, judge: bool, returned: Frontier) -> bool:
        """Record the verdict of a halted state; True means a counterexample was found."""
        if state.status == Status.REJECTED:
            self._leaf(node, state, Verdict.infeasible(state.error_message))
            return False
        if state.status == Status.STUCK:
            reason = state.error.reason if state.error is not None else "Stuck"
            witness = None
            if isinstance(state.error, NonConcreteValue):
                # inputs that reach the unresolved address
                _, witness = self.solver.witness_for(state)
            self._leaf(node, state, Verdict.stuck(reason, state.error_message, witness))
            return False
        if state.status == Status.FAILED:
            outcome, witness = self.solver.witness_for(state)
            if outcome == SolverResult.UNKNOWN:
                self._leaf(node, state, Verdict.stuck("SolverTimeout", "could not solve for a witness"))
                return False
            reason = state.error.reason if state.error is not None else "Failed"
            self._leaf(node, state, Verdict.failed(reason, state.error_message, witness, self._confirm(witness)))
            return True

        if not judge:
            node.result = state.describe_result()
            node.steps = state.steps
            returned.append((state, node.id))
            return False

        result = state.result
        node.result = state.describe_result()
        if result is None:
            self._leaf(node, state, Verdict.stuck("NoResult", "test returned no value"))
            return False
        falsified = is_zero(result)
        if falsified is False:
            self._leaf(node, state, Verdict.passed())
            return False
        outcome, witness = self.solver.witness_for(state, *([] if falsified is True else [falsified]))
        if outcome == SolverResult.UNSAT:
            self._leaf(node, state, Verdict.passed())
            return False
        if outcome == SolverResult.UNKNOWN:
            self._leaf(node, state, Verdict.stuck("SolverTimeout", "could not decide whether the result can be false"))
            return False
        detail = f"test returned {render(result, 80)}"
        self._leaf(node, state, Verdict.failed("Falsified", detail, witness, self._confirm(witness)))
        return True

    def _confirm(self, witness: dict[str, int] | None) -> bool | None:
        if self.replay is None or not self.config.verify_witness or witness is None:
            return None
        confirmed = self.replay(witness)
        if not confirmed:
            logger.warning("witness %s did not reproduce the failure under concrete replay", witness)
        return confirmed
