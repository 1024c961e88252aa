"""CLI entry point for wasm-sym."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import ARITHMETIC_POLICIES, EXPLORATION_STRATEGIES
from .engine.session import TestResult, TestSession
from .errors import ConfigurationError, ProofNotFound, WasmSymError
from .proof.store import DEFAULT_PROOF_DIR, ProofStore
from .proof.tree import VerdictKind
from .report.generator import ReportGenerator, render_proof_tree
from .wasm.manifest import DEFAULT_MANIFEST_NAME, Manifest, load_manifest

console = Console()

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_STUCK = 2
EXIT_CONFIGURATION = 3


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING if verbosity == 0 else logging.INFO if verbosity == 1 else logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _exit_code(results: Sequence[TestResult]) -> int:
    kinds = {result.verdict.kind for result in results}
    if VerdictKind.FAILED in kinds:
        return EXIT_FAILED
    if VerdictKind.STUCK in kinds:
        return EXIT_STUCK
    return EXIT_PASSED


def _fail_configuration(exc: Exception) -> None:
    console.print(f"[red]Error: {exc}[/]")
    sys.exit(EXIT_CONFIGURATION)


def _load_session(manifest_path: str, wasm: str | None, overrides: dict[str, Any]) -> tuple[TestSession, str]:
    path = Path(manifest_path)
    if path.is_file():
        manifest = load_manifest(path)
    elif wasm is not None:
        manifest = Manifest()
    else:
        raise ConfigurationError(f"Manifest {path} not found; pass --manifest or --wasm")
    session = TestSession.from_manifest(manifest, overrides, wasm)
    project = manifest.name if manifest.name != "unknown" else Path(wasm or path).stem
    return session, project


def _shared_options(func: Callable) -> Callable:
    options = [
        click.option("--wasm", type=click.Path(dir_okay=False), default=None,
                     help="Test contract to run instead of the manifest's 'test' entry."),
        click.option("--id", "test_id", type=str, default=None, help="Run only the test with this name."),
        click.option("--max-steps", type=int, default=None, help="Instruction budget per state."),
        click.option("--max-call-depth", type=int, default=None, help="Maximum call stack depth."),
        click.option("--arithmetic", type=click.Choice(ARITHMETIC_POLICIES), default=None,
                     help="Integer overflow policy."),
        click.option("--workers", type=int, default=None, help="Run tests on this many worker processes."),
        click.option("--format", "fmt", type=click.Choice(["table", "json", "markdown"]), default="table",
                     show_default=True),
        click.option("--output", "-o", type=click.Path(dir_okay=False), default=None,
                     help="Write the JSON or Markdown report to this file."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _emit(results: list[TestResult], project: str, fmt: str, output: str | None, title: str) -> None:
    generator = ReportGenerator(project)
    if fmt == "table" and output is None:
        if not results:
            console.print("[yellow]No tests discovered.[/]")
            return
        console.print(generator.to_table(results, title=title))
        summary = generator.summary(results)
        totals = ", ".join(f"{count} {kind}" for kind, count in summary.items() if count)
        console.print(f"\n[bold]{totals}[/] ({len(results)} test(s))")
        return
    report = generator.to_markdown(results) if fmt == "markdown" else generator.to_json(results)
    if output:
        Path(output).write_text(report)
        console.print(f"[green]Report saved to {output}[/]")
    else:
        click.echo(report)


@click.group()
@click.version_option(version=__version__)
@click.option("--manifest", "-m", type=click.Path(dir_okay=False), default=DEFAULT_MANIFEST_NAME,
              show_default=True, help="Project manifest listing the test contract and its targets.")
@click.option("--verbose", "-v", count=True, help="-v for progress, -vv for debug output.")
@click.pass_context
def main(ctx: click.Context, manifest: str, verbose: int) -> None:
    """Fuzz and prove property tests of WebAssembly smart contracts."""
    _configure_logging(verbose)
    ctx.obj = {"manifest": manifest}


@main.command("test")
@_shared_options
@click.option("--max-examples", type=int, default=None, help="Examples to try per test.")
@click.option("--seed", type=int, default=None, help="Seed for example generation.")
@click.pass_context
def test_command(
    ctx: click.Context,
    wasm: str | None,
    test_id: str | None,
    max_steps: int | None,
    max_call_depth: int | None,
    arithmetic: str | None,
    workers: int | None,
    fmt: str,
    output: str | None,
    max_examples: int | None,
    seed: int | None,
) -> None:
    """Run every test with concretely generated inputs (fuzz mode)."""
    overrides = {
        "max_steps": max_steps,
        "max_call_depth": max_call_depth,
        "arithmetic": arithmetic,
        "workers": workers,
        "max_examples": max_examples,
        "seed": seed,
    }
    try:
        session, project = _load_session(ctx.obj["manifest"], wasm, overrides)
        with console.status("[bold green]Fuzzing..."):
            results = session.run("fuzz", only=test_id)
    except WasmSymError as exc:
        _fail_configuration(exc)
        return
    _emit(results, project, fmt, output, "Fuzz Results")
    sys.exit(_exit_code(results))


@main.group()
def prove() -> None:
    """Symbolic execution: prove tests over all inputs and inspect proofs."""


@prove.command("run")
@_shared_options
@click.option("--proof-dir", type=click.Path(file_okay=False), default=DEFAULT_PROOF_DIR, show_default=True,
              help="Directory proofs are written to.")
@click.option("--max-paths", type=int, default=None, help="Maximum number of explored leaves per test.")
@click.option("--max-depth", type=int, default=None, help="Maximum number of forks along one path.")
@click.option("--max-loop-iterations", type=int, default=None, help="Back-branches allowed per loop.")
@click.option("--solver-timeout", type=int, default=None, help="Per-query solver timeout in milliseconds.")
@click.option("--timeout", type=float, default=None, help="Wall-clock budget per test in seconds.")
@click.option("--strategy", type=click.Choice(EXPLORATION_STRATEGIES), default=None, help="Exploration order.")
@click.option("--verify-witness/--no-verify-witness", default=None,
              help="Replay counterexamples concretely before reporting them.")
@click.pass_context
def prove_run(
    ctx: click.Context,
    wasm: str | None,
    test_id: str | None,
    max_steps: int | None,
    max_call_depth: int | None,
    arithmetic: str | None,
    workers: int | None,
    fmt: str,
    output: str | None,
    proof_dir: str,
    max_paths: int | None,
    max_depth: int | None,
    max_loop_iterations: int | None,
    solver_timeout: int | None,
    timeout: float | None,
    strategy: str | None,
    verify_witness: bool | None,
) -> None:
    """Explore every path of each test symbolically and save the proof trees."""
    overrides = {
        "max_steps": max_steps,
        "max_call_depth": max_call_depth,
        "arithmetic": arithmetic,
        "workers": workers,
        "max_paths": max_paths,
        "max_depth": max_depth,
        "max_loop_iterations": max_loop_iterations,
        "solver_timeout": solver_timeout,
        "timeout": timeout,
        "strategy": strategy,
        "verify_witness": verify_witness,
    }
    try:
        session, project = _load_session(ctx.obj["manifest"], wasm, overrides)
        with console.status("[bold green]Running symbolic execution..."):
            results = session.run("prove", only=test_id, store=ProofStore(proof_dir))
    except WasmSymError as exc:
        _fail_configuration(exc)
        return
    _emit(results, project, fmt, output, "Proof Results")
    for result in results:
        if result.verdict.kind == VerdictKind.PASSED and not result.exhaustive:
            console.print(f"[yellow]{result.name}: passed, but exploration was budget-limited[/]")
    if fmt == "table" and output is None and results:
        console.print(f"Proofs written to {proof_dir}")
    sys.exit(_exit_code(results))


@prove.command("view")
@click.argument("test_id")
@click.option("--proof-dir", type=click.Path(file_okay=False), default=DEFAULT_PROOF_DIR, show_default=True)
@click.option("--hash", "module_hash", type=str, default=None, help="Module hash (or prefix) the proof belongs to.")
@click.option("--host-calls", is_flag=True, help="Show host calls recorded at each leaf.")
@click.option("--json", "as_json", is_flag=True, help="Print the stored tree as JSON.")
def prove_view(test_id: str, proof_dir: str, module_hash: str | None, host_calls: bool, as_json: bool) -> None:
    """Render a saved proof tree without re-running the engine."""
    store = ProofStore(proof_dir)
    try:
        matches = store.find(test_id, module_hash)
        if not matches:
            raise ProofNotFound(f"No proof for '{test_id}' in {proof_dir}")
        path = max(matches, key=lambda p: p.stat().st_mtime)
        if len(matches) > 1:
            console.print(
                f"[yellow]{len(matches)} proofs match '{test_id}'; showing the newest ({path.parent.name[:16]}). "
                "Use --hash to pick another.[/]"
            )
        tree = store.load_path(path)
    except WasmSymError as exc:
        _fail_configuration(exc)
        return

    if as_json:
        click.echo(json.dumps(tree.to_dict(), indent=2, sort_keys=True))
        return
    console.print(render_proof_tree(tree, show_host_calls=host_calls))
    counts = tree.counts()
    console.print(
        "\nLeaves: " + ", ".join(f"{kind} {count}" for kind, count in counts.items() if count)
        + ("  [green](exhaustive)[/]" if tree.exhaustive else "  [yellow](not exhaustive)[/]")
    )


@prove.command("list")
@click.option("--proof-dir", type=click.Path(file_okay=False), default=DEFAULT_PROOF_DIR, show_default=True)
def prove_list(proof_dir: str) -> None:
    """List saved proofs."""
    entries = ProofStore(proof_dir).entries()
    if not entries:
        console.print(f"[yellow]No proofs under {proof_dir}.[/]")
        return
    table = Table(title="Saved Proofs")
    table.add_column("Test")
    table.add_column("Module")
    table.add_column("Path")
    for digest, test, path in entries:
        table.add_row(test, digest[:16], str(path))
    console.print(table)


if __name__ == "__main__":
    main()
