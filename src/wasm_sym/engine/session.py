"""Test sessions: discovery, ``init``, and the fuzz and prove drivers."""
from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import EngineConfig
from ..errors import ConfigurationError, DeploymentError, StateError
from ..proof.store import ProofStore
from ..proof.tree import ProofTree, Verdict, VerdictKind
from ..wasm.manifest import Manifest
from ..wasm.parser import VALTYPE_BITS, FuncType, ValType
from ..wasm.registry import ModuleHandle, ModuleRegistry
from .explorer import Explorer
from .fuzzer import Fuzzer
from .host import HostBridge
from .interpreter import Interpreter
from .solver import ConstraintManager
from .state import TEST_ADDRESS, Domain, FrameKind, MachineState, Mode, Status
from .values import Concrete, Value, fresh, is_zero, render

__all__ = ["INIT_EXPORT", "TestCase", "TestResult", "TestSession"]

logger = logging.getLogger(__name__)

INIT_EXPORT = "init"
_INTEGER_TYPES = (ValType.I32, ValType.I64)


@dataclass(slots=True, frozen=True)
class TestCase:
    __test__ = False

    name: str
    func_index: int
    func_type: FuncType
    # Leading parameters that are filled in by the session rather than drawn.
    fixed: int = 0
    prefix: str = "arg"

    @property
    def param_bits(self) -> tuple[int, ...]:
        return tuple(VALTYPE_BITS[p] for p in self.func_type.params[self.fixed :])

    def arg_name(self, index: int) -> str:
        return f"{self.prefix}{index}"


@dataclass(slots=True)
class TestResult:
    __test__ = False

    name: str
    mode: str
    verdict: Verdict
    module_hash: str
    exhaustive: bool = False
    examples: int = 0
    rejected: int = 0
    paths: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    first_failure: dict[str, int] | None = None
    elapsed: float = 0.0
    proof_path: str | None = None
    solver_queries: int = 0

    @property
    def passed(self) -> bool:
        return self.verdict.kind == VerdictKind.PASSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mode": self.mode,
            "verdict": self.verdict.to_dict(),
            "module_hash": self.module_hash,
            "exhaustive": self.exhaustive,
            "examples": self.examples,
            "rejected": self.rejected,
            "paths": self.paths,
            "counts": dict(self.counts),
            "first_failure": dict(self.first_failure) if self.first_failure is not None else None,
            "elapsed": round(self.elapsed, 4),
            "proof_path": self.proof_path,
            "solver_queries": self.solver_queries,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TestResult:
        first_failure = payload.get("first_failure")
        return cls(
            name=payload["name"],
            mode=payload["mode"],
            verdict=Verdict.from_dict(payload["verdict"]),
            module_hash=payload["module_hash"],
            exhaustive=bool(payload.get("exhaustive", False)),
            examples=int(payload.get("examples", 0)),
            rejected=int(payload.get("rejected", 0)),
            paths=int(payload.get("paths", 0)),
            counts=dict(payload.get("counts", {})),
            first_failure=dict(first_failure) if first_failure is not None else None,
            elapsed=float(payload.get("elapsed", 0.0)),
            proof_path=payload.get("proof_path"),
            solver_queries=int(payload.get("solver_queries", 0)),
        )


def _check_bounds(owner: str, bounds: list[tuple[int, int]], bits: tuple[int, ...]) -> None:
    if len(bounds) > len(bits):
        raise ConfigurationError(f"'{owner}' declares {len(bounds)} domain(s) for {len(bits)} parameter(s)")
    for (low, high), width in zip(bounds, bits):
        floor = -(1 << (width - 1)) if low < 0 else 0
        ceiling = (1 << (width - 1)) - 1 if low < 0 else (1 << width) - 1
        if low < floor or high > ceiling:
            raise ConfigurationError(f"domain [{low}, {high}] of '{owner}' does not fit an i{width} parameter")


class TestSession:
    """One test contract, the contracts it deploys, and everything discovered in it.

    The registry is frozen on construction. ``init`` runs once per session in
    fuzz mode (its concrete result is the shared base state); in prove mode it
    is explored symbolically when it takes inputs beyond the contract handles.
    """

    __test__ = False

    def __init__(
        self,
        registry: ModuleRegistry,
        test_handle: ModuleHandle,
        contracts: Sequence[ModuleHandle] = (),
        config: EngineConfig | None = None,
        domains: dict[str, list[tuple[int, int]]] | None = None,
    ) -> None:
        self.registry = registry
        self.registry.freeze()
        self.test_handle = test_handle
        self.contracts = list(contracts)
        self.config = config or EngineConfig()
        self.domains = dict(domains or {})
        self.module = registry.resolve(test_handle.hash)
        self.interpreter = Interpreter(registry, self.config)

        for imp in self.module.imports:
            try:
                HostBridge.check_import(imp.module, imp.name, self.module.types[imp.desc])
            except DeploymentError as exc:
                raise ConfigurationError(f"test contract: {exc.message}") from None

        self.init: TestCase | None = None
        self.tests: list[TestCase] = []
        self._discover()
        self._check_domains()
        self._bases: dict[tuple[int, ...], MachineState] = {}

    # construction

    @classmethod
    def from_manifest(
        cls,
        manifest: Manifest,
        overrides: dict[str, Any] | None = None,
        wasm: Path | str | None = None,
    ) -> TestSession:
        config = EngineConfig.from_mapping(manifest.config).merged(**(overrides or {}))
        test_path = Path(wasm) if wasm is not None else manifest.test
        if test_path is None:
            raise ConfigurationError("No test contract: set 'test' in the manifest or pass --wasm")
        try:
            data = test_path.read_bytes()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read test contract {test_path}: {exc}") from exc
        registry = ModuleRegistry()
        contracts = manifest.register_contracts(registry)
        name = manifest.name if manifest.name != "unknown" else test_path.stem
        handle = registry.register(data, name=name)
        return cls(registry, handle, contracts, config, manifest.domains)

    @classmethod
    def from_bytes(
        cls,
        test_wasm: bytes,
        contracts: Iterable[tuple[str, bytes]] = (),
        config: EngineConfig | None = None,
        domains: dict[str, list[tuple[int, int]]] | None = None,
        name: str = "test",
    ) -> TestSession:
        registry = ModuleRegistry()
        handles = [registry.register(data, name=contract_name) for contract_name, data in contracts]
        handle = registry.register(test_wasm, name=name)
        return cls(registry, handle, handles, config, domains)

    def to_payload(self) -> dict[str, Any]:
        """Everything a worker process needs to rebuild this session."""
        return {
            "test": self.registry.bytecode(self.test_handle.hash),
            "name": self.test_handle.name or "test",
            "contracts": [(h.name or h.hex[:16], self.registry.bytecode(h.hash)) for h in self.contracts],
            "config": self.config.to_dict(),
            "domains": {k: list(v) for k, v in self.domains.items()},
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TestSession:
        return cls.from_bytes(
            payload["test"],
            payload["contracts"],
            EngineConfig.from_mapping(payload["config"]),
            payload["domains"],
            name=payload["name"],
        )

    # discovery

    def _discover(self) -> None:
        imported = len(self.module.imported_functions)
        prefixes = self.config.test_prefixes
        for name, func_type in self.registry.exports(self.test_handle):
            index = self.module.exported_function(name)
            if index is None or index < imported:
                continue
            if name == INIT_EXPORT:
                self.init = self._init_case(index, func_type)
            elif name.startswith(prefixes):
                if len(func_type.results) != 1 or func_type.results[0] not in _INTEGER_TYPES:
                    logger.warning("skipping %s: a test must return a single i32 or i64, not %s", name, func_type)
                    continue
                if any(p not in _INTEGER_TYPES for p in func_type.params):
                    logger.warning("skipping %s: only integer parameters are supported (%s)", name, func_type)
                    continue
                self.tests.append(TestCase(name, index, func_type))
        logger.debug(
            "discovered %d test(s)%s in %s",
            len(self.tests), " and init" if self.init else "", self.test_handle.hex[:16],
        )

    def _init_case(self, index: int, func_type: FuncType) -> TestCase:
        handles = len(self.contracts)
        params = func_type.params
        if len(params) < handles:
            raise ConfigurationError(
                f"init takes {len(params)} parameter(s) but the manifest lists {handles} contract(s)"
            )
        if any(p != ValType.I64 for p in params[:handles]):
            raise ConfigurationError("init must take an i64 bytes handle for every manifest contract")
        if any(p not in _INTEGER_TYPES for p in params[handles:]):
            raise ConfigurationError(f"init has non-integer parameters: {func_type}")
        return TestCase(INIT_EXPORT, index, func_type, fixed=handles, prefix="init.arg")

    def _check_domains(self) -> None:
        known = {test.name: test for test in self.tests}
        if self.init is not None:
            known[INIT_EXPORT] = self.init
        for owner, bounds in self.domains.items():
            case = known.get(owner)
            if case is None:
                raise ConfigurationError(f"Domains declared for unknown test '{owner}'")
            _check_bounds(owner, bounds, case.param_bits)

    def domains_for(self, name: str) -> list[tuple[int, int]]:
        return list(self.domains.get(name, []))

    def select(self, only: str | None = None) -> list[TestCase]:
        if only is None:
            return list(self.tests)
        selected = [test for test in self.tests if test.name == only]
        if not selected:
            raise ConfigurationError(f"No test named '{only}' in {self.test_handle.name or self.test_handle.hex[:16]}")
        return selected

    # concrete execution

    def _fresh_state(self) -> MachineState:
        """Deploy the test contract at the test address and run its start function."""
        state = MachineState(mode=Mode.CONCRETE)
        try:
            self.interpreter.deploy(state, TEST_ADDRESS, self.test_handle.hash)
        except StateError as exc:
            state.terminate(exc)
            state.error_message = f"deploying the test contract: {exc.message}"
            return state
        return self.interpreter.run_concrete(state)

    def _handle_args(self, state: MachineState) -> list[Value]:
        return [Concrete(state.new_handle(handle.hash), 64) for handle in self.contracts]

    def _init_defaults(self) -> tuple[int, ...]:
        if self.init is None:
            return ()
        bounds = self.domains_for(INIT_EXPORT)
        values = []
        for index in range(len(self.init.param_bits)):
            low, high = bounds[index] if index < len(bounds) else (0, 0)
            values.append(min(max(0, low), high))
        return tuple(values)

    def base_state(self, init_args: tuple[int, ...] | None = None) -> MachineState:
        """Concrete state after deployment and ``init``; cached per ``init`` arguments."""
        key = self._init_defaults() if init_args is None else tuple(init_args)
        cached = self._bases.get(key)
        if cached is not None:
            return cached
        state = self._fresh_state()
        if self.init is not None and not state.halted:
            args = self._handle_args(state)
            args.extend(Concrete(v, bits) for v, bits in zip(key, self.init.param_bits))
            self.interpreter.push_call(state, TEST_ADDRESS, self.init.func_index, args, kind=FrameKind.ENTRY)
            state = self.interpreter.run_concrete(state)
            if state.status == Status.RETURNED:
                _rearm(state)
            elif state.error_message is not None:
                state.error_message = f"init: {state.error_message}"
        if state.halted:
            logger.warning("base state halted before any test ran: %s", state.error_message)
        self._bases[key] = state
        return state

    def entry_state(self, base: MachineState, test: TestCase, args: list[Value]) -> MachineState:
        state = base.clone()
        if state.halted:
            return state
        state.steps = 0
        state.loop_counts.clear()
        self.interpreter.push_call(state, TEST_ADDRESS, test.func_index, args, kind=FrameKind.ENTRY)
        return state

    def execute(
        self, test: TestCase, args: Sequence[int], init_args: tuple[int, ...] | None = None
    ) -> MachineState:
        values: list[Value] = [Concrete(v, bits) for v, bits in zip(args, test.param_bits)]
        state = self.entry_state(self.base_state(init_args), test, values)
        return self.interpreter.run_concrete(state)

    @staticmethod
    def verdict_of(state: MachineState) -> Verdict | None:
        """Verdict of a concretely executed test; ``None`` when an assumption rejected it."""
        if state.status == Status.REJECTED:
            return None
        if state.status in (Status.FAILED, Status.STUCK):
            reason = state.error.reason if state.error is not None else state.status.value
            if state.status == Status.STUCK:
                return Verdict.stuck(reason, state.error_message)
            return Verdict.failed(reason, state.error_message)
        if state.status != Status.RETURNED or state.result is None:
            return Verdict.stuck("NoResult", "test returned no value")
        if is_zero(state.result) is True:
            return Verdict.failed("Falsified", f"test returned {render(state.result)}")
        return Verdict.passed()

    def replay(self, test: TestCase, witness: dict[str, int]) -> bool:
        """Run *witness* concretely; True when it fails the test again."""
        init_args = None
        if self.init is not None and self.init.param_bits:
            init_args = tuple(witness.get(self.init.arg_name(i), 0) for i in range(len(self.init.param_bits)))
        args = [witness.get(test.arg_name(i), 0) for i in range(len(test.param_bits))]
        verdict = self.verdict_of(self.execute(test, args, init_args))
        return verdict is not None and verdict.kind == VerdictKind.FAILED

    # drivers

    def fuzz(self, test: TestCase) -> TestResult:
        return Fuzzer(self).run(test)

    def _symbolic_args(self, state: MachineState, case: TestCase) -> list[Value]:
        bounds = self.domains_for(case.name)
        args: list[Value] = []
        for index, bits in enumerate(case.param_bits):
            name = case.arg_name(index)
            low, high = bounds[index] if index < len(bounds) else (None, None)
            state.variables[name] = Domain(bits, low, high)
            args.append(fresh(name, bits))
        return args

    def prove(self, test: TestCase) -> tuple[TestResult, ProofTree]:
        started = time.perf_counter()
        solver = ConstraintManager(self.config.solver_timeout)
        interpreter = Interpreter(self.registry, self.config, solver)
        explorer = Explorer(interpreter, solver, self.config, replay=lambda witness: self.replay(test, witness))
        tree = ProofTree(test=test.name, module_hash=self.test_handle.hex, config=self.config.to_dict())
        # the artifact is keyed by the test contract only
        tree.config["contracts"] = {handle.name or handle.hex[:16]: handle.hex for handle in self.contracts}
        explorer.start_clock()
        logger.info("proving %s", test.name)

        if self.init is not None and self.init.param_bits:
            state = self._fresh_state()
            if not state.halted:
                state.mode = Mode.SYMBOLIC
                args = self._handle_args(state) + self._symbolic_args(state, self.init)
                interpreter.push_call(state, TEST_ADDRESS, self.init.func_index, args, kind=FrameKind.ENTRY)
            frontier = explorer.explore(tree, [(state, tree.root.id)], judge=False)
            for returned, _ in frontier:
                _rearm(returned)
        else:
            base = self.base_state().clone()
            base.mode = Mode.SYMBOLIC
            frontier = [(base, tree.root.id)]

        if tree.failing_leaf() is None:
            entries = []
            for state, node_id in frontier:
                entries.append((self.entry_state(state, test, self._symbolic_args(state, test)), node_id))
            explorer.explore(tree, entries)

        verdict = tree.verdict()
        counts = tree.counts()
        result = TestResult(
            name=test.name,
            mode="prove",
            verdict=verdict,
            module_hash=self.test_handle.hex,
            exhaustive=tree.exhaustive,
            paths=len(tree.leaves()),
            counts=counts,
            elapsed=time.perf_counter() - started,
            solver_queries=solver.queries,
        )
        logger.info(
            "proved %s: %s over %d path(s)%s",
            test.name, verdict.describe(), result.paths, "" if result.exhaustive else " (not exhaustive)",
        )
        return result, tree

    def run_one(self, mode: str, test: TestCase) -> tuple[TestResult, ProofTree | None]:
        if mode == "fuzz":
            return self.fuzz(test), None
        if mode == "prove":
            return self.prove(test)
        raise ConfigurationError(f"Unknown mode '{mode}'")

    def run(self, mode: str, only: str | None = None, store: ProofStore | None = None) -> list[TestResult]:
        """Run every selected test; proofs are saved to *store* by this process only."""
        tests = self.select(only)
        if self.config.workers > 1 and len(tests) > 1:
            outcomes = self._run_parallel(mode, tests)
        else:
            outcomes = [self.run_one(mode, test) for test in tests]

        results: list[TestResult] = []
        for result, tree in outcomes:
            if tree is not None and store is not None:
                result.proof_path = str(store.save(tree))
            results.append(result)
        return results

    def _run_parallel(self, mode: str, tests: list[TestCase]) -> list[tuple[TestResult, ProofTree | None]]:
        payload = self.to_payload()
        finished: dict[str, tuple[TestResult, ProofTree | None]] = {}
        workers = min(self.config.workers, len(tests))
        logger.info("running %d test(s) on %d worker process(es)", len(tests), workers)
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(_run_in_worker, payload, mode, test.name): test for test in tests}
            for future in as_completed(futures):
                raw_result, raw_tree = future.result()
                result = TestResult.from_dict(raw_result)
                finished[result.name] = (result, ProofTree.from_dict(raw_tree) if raw_tree is not None else None)
        return [finished[test.name] for test in tests]


def _rearm(state: MachineState) -> None:
    """Turn a state whose entry function returned back into a runnable base."""
    state.status = Status.RUNNING
    state.result = None


def _run_in_worker(payload: dict[str, Any], mode: str, test_name: str) -> tuple[dict[str, Any], dict[str, Any] | None]:
    session = TestSession.from_payload(payload)
    result, tree = session.run_one(mode, session.select(test_name)[0])
    return result.to_dict(), tree.to_dict() if tree is not None else None
