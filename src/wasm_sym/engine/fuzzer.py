"""Fuzz mode: seeded randomized testing with shrinking, driven by hypothesis."""
from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from hypothesis import HealthCheck, Phase, Verbosity, given, seed, settings
from hypothesis import assume as hypothesis_assume
from hypothesis import strategies as st
from hypothesis.errors import Unsatisfiable

from ..proof.tree import Verdict, VerdictKind

if TYPE_CHECKING:
    from .session import TestCase, TestResult, TestSession

__all__ = ["FuzzOutcome", "Fuzzer"]

logger = logging.getLogger(__name__)


class _Falsified(Exception):
    def __init__(self, args: tuple[int, ...], verdict: Verdict) -> None:
        super().__init__(args)
        self.example = args
        self.verdict = verdict


@dataclass(slots=True)
class FuzzOutcome:
    examples: int = 0
    rejected: int = 0
    first_failure: tuple[int, ...] | None = None
    failure: tuple[int, ...] | None = None
    verdict: Verdict | None = None
    stuck: Verdict | None = None
    stuck_example: tuple[int, ...] | None = None
    notes: list[str] = field(default_factory=list)


class Fuzzer:
    """Runs one test function on many concrete argument tuples.

    Arguments are drawn per parameter from its declared domain (or the full
    unsigned range of its type). The first failing example is kept; hypothesis
    then shrinks towards zero and the final, minimal example is reported as
    the witness.

    When the random search finds nothing, the domain corners are run too:
    all parameters at their low bound, all at their high bound, and each
    parameter alone at its high bound. A failing corner is reported unshrunk.
    """

    def __init__(self, session: TestSession) -> None:
        self.session = session
        self.config = session.config

    def bounds(self, test: TestCase) -> list[tuple[int, int]]:
        declared = self.session.domains_for(test.name)
        return [
            tuple(declared[index]) if index < len(declared) else (0, (1 << bits) - 1)
            for index, bits in enumerate(test.param_bits)
        ]

    def strategies(self, test: TestCase) -> list[st.SearchStrategy[int]]:
        return [st.integers(min_value=low, max_value=high) for low, high in self.bounds(test)]

    def corners(self, test: TestCase) -> list[tuple[int, ...]]:
        bounds = self.bounds(test)
        lows = tuple(low for low, _ in bounds)
        corners = [lows, tuple(high for _, high in bounds)]
        for index, (_, high) in enumerate(bounds):
            corners.append(lows[:index] + (high,) + lows[index + 1 :])
        return list(dict.fromkeys(corners))

    def fuzz(self, test: TestCase) -> FuzzOutcome:
        outcome = FuzzOutcome()
        session = self.session

        @seed(self.config.seed)
        @settings(
            max_examples=self.config.max_examples,
            database=None,
            deadline=None,
            derandomize=False,
            report_multiple_bugs=False,
            verbosity=Verbosity.quiet,
            phases=(Phase.explicit, Phase.generate, Phase.shrink),
            suppress_health_check=[HealthCheck.too_slow, HealthCheck.filter_too_much],
        )
        @given(st.tuples(*self.strategies(test)))
        def check(args: tuple[int, ...]) -> None:
            outcome.examples += 1
            verdict = session.verdict_of(session.execute(test, args))
            if verdict is None:
                outcome.rejected += 1
                hypothesis_assume(False)
            if verdict.kind == VerdictKind.FAILED:
                if outcome.first_failure is None:
                    outcome.first_failure = args
                raise _Falsified(args, verdict)
            if verdict.kind == VerdictKind.STUCK and outcome.stuck is None:
                outcome.stuck = verdict
                outcome.stuck_example = args

        try:
            check()
        except _Falsified as exc:
            outcome.failure = exc.example
            outcome.verdict = exc.verdict
        except Unsatisfiable as exc:
            outcome.notes.append(str(exc))
            outcome.verdict = Verdict.stuck("AssumptionsUnsatisfiable", "no example satisfied the test's assumptions")
        if outcome.verdict is None:
            self._run_corners(test, outcome)
        return outcome

    def _run_corners(self, test: TestCase, outcome: FuzzOutcome) -> None:
        session = self.session
        for args in self.corners(test):
            outcome.examples += 1
            verdict = session.verdict_of(session.execute(test, args))
            if verdict is None:
                outcome.rejected += 1
            elif verdict.kind == VerdictKind.FAILED:
                logger.debug("%s: domain corner %s falsified the test", test.name, args)
                outcome.first_failure = outcome.failure = args
                outcome.verdict = verdict
                return
            elif verdict.kind == VerdictKind.STUCK and outcome.stuck is None:
                outcome.stuck = verdict
                outcome.stuck_example = args

    def run(self, test: TestCase) -> TestResult:
        from .session import TestResult

        started = time.perf_counter()
        outcome = self.fuzz(test)
        witness = self._witness(test, outcome.failure)

        if outcome.verdict is not None and outcome.verdict.kind == VerdictKind.FAILED:
            verdict = Verdict.failed(
                outcome.verdict.reason or "Falsified", outcome.verdict.detail, witness, confirmed=True
            )
        elif outcome.verdict is not None:
            verdict = outcome.verdict
        elif outcome.stuck is not None:
            verdict = Verdict.stuck(
                outcome.stuck.reason or "Stuck",
                f"{outcome.stuck.detail} (example {self._witness(test, outcome.stuck_example)})",
            )
        else:
            verdict = Verdict.passed()

        logger.info(
            "fuzzed %s: %d example(s), %d rejected, %s",
            test.name, outcome.examples, outcome.rejected, verdict.describe(),
        )
        return TestResult(
            name=test.name,
            mode="fuzz",
            verdict=verdict,
            module_hash=self.session.test_handle.hex,
            exhaustive=False,
            examples=outcome.examples,
            rejected=outcome.rejected,
            first_failure=self._witness(test, outcome.first_failure),
            elapsed=time.perf_counter() - started,
        )

    @staticmethod
    def _witness(test: TestCase, args: Sequence[int] | None) -> dict[str, int] | None:
        if args is None:
            return None
        return {test.arg_name(i): value for i, value in enumerate(args)}
