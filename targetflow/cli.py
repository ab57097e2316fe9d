"""targetflow CLI - build, inspect and prune pipelines.

Reads a targetflow.yaml pipeline file, checks every target against its last
recorded build, and runs only what changed.
"""

import json
import logging
import os
import sys
from dataclasses import asdict, fields
from io import StringIO
from pathlib import Path

import click

from targetflow.exceptions import TargetflowError
from targetflow.log import logger, set_loggers_level
from targetflow.run.branching import GroupedValue, resolve_pattern_shape, slice_value
from targetflow.run.executor import ExecutionConfig, ParallelExecutor, RunSummary, prune
from targetflow.run.meta import MetadataStore
from targetflow.run.parser import DEFAULT_PIPELINE, PipelineParser
from targetflow.run.pattern import describe
from targetflow.run.storage import LocalStorage

logger = logger.getChild(__name__)


def _load(ctx) -> tuple:
    """Parse the pipeline file named on the command line."""
    pipeline = PipelineParser(ctx.obj["file"]).parse()
    return pipeline.registry, dict(pipeline.config)


def _make_config(file_config: dict, **overrides) -> ExecutionConfig:
    """Settings from the pipeline's ``config`` block, overridden by CLI flags."""
    values = dict(file_config)
    values.update({k: v for k, v in overrides.items() if v is not None})
    names = {f.name for f in fields(ExecutionConfig)}
    return ExecutionConfig(**{k: v for k, v in values.items() if k in names})


def _fail(e: Exception):
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(package_name="targetflow")
@click.option("-C", "--directory", default=".", help="Run as if targetflow was started in this path.")
@click.option(
    "-f",
    "--file",
    "pipeline_file",
    type=click.Path(path_type=Path),
    default=DEFAULT_PIPELINE,
    help="Path to the pipeline file",
)
@click.option("-q", "--quiet", count=True, help="Decrease verbosity.")
@click.option("-v", "--verbose", count=True, help="Increase verbosity.")
@click.pass_context
def cli(ctx, directory, pipeline_file, quiet, verbose):
    """targetflow - dependency-tracked pipelines with dynamic branching.

    Targets are rebuilt only when their code, settings, upstream values or
    tracked files change. Patterns expand into one branch per slice of
    their inputs at run time.
    """
    ctx.ensure_object(dict)
    ctx.obj["file"] = pipeline_file
    ctx.obj["verbose"] = verbose

    if directory != ".":
        os.chdir(directory)

    level = logging.INFO + 10 * (quiet - verbose)
    ctx.with_resource(set_loggers_level(max(logging.DEBUG, level)))


# =============================================================================
# Run
# =============================================================================


@cli.command("run")
@click.argument("targets", nargs=-1)
@click.option("-d", "--dry-run", is_flag=True, help="Show what would run without running it")
@click.option("-j", "--jobs", type=int, default=None, help="Number of parallel workers (default: CPU count)")
@click.option(
    "-w",
    "--workers",
    type=click.Choice(["persistent", "transient"]),
    default=None,
    help="Keep one worker pool for the run, or launch a worker per unit",
)
@click.option(
    "--backend",
    type=click.Choice(["thread", "process"]),
    default=None,
    help="Run workers on threads or processes",
)
@click.option("--force", is_flag=True, help="Rebuild everything (ignore fingerprints)")
@click.option("--force-pattern", "force_patterns", multiple=True, help="Rebuild targets matching this glob")
@click.option("--cached-pattern", "cached_patterns", multiple=True, help="Reuse targets matching this glob if built")
@click.option("-k", "--keep-going", is_flag=True, help="Use the 'continue' error policy for every target")
@click.option("--seed", type=int, default=None, help="Run seed for per-target seeds and sample()")
@click.option("--timeout", type=float, default=None, help="Per-unit timeout in seconds")
@click.option("--cancel-timeout", type=float, default=None, help="Seconds to wait for running units after a stop")
@click.pass_context
def run_cmd(
    ctx,
    targets: tuple[str, ...],
    dry_run: bool,
    jobs: int | None,
    workers: str | None,
    backend: str | None,
    force: bool,
    force_patterns: tuple[str, ...],
    cached_patterns: tuple[str, ...],
    keep_going: bool,
    seed: int | None,
    timeout: float | None,
    cancel_timeout: float | None,
):
    """Build stale targets, in parallel.

    Examples:

        \b
        # Build everything that changed
        targetflow run

        \b
        # Build one target and its upstream, 4 workers
        targetflow run -j 4 report

        \b
        # Show what would run
        targetflow run --dry-run
    """
    try:
        registry, file_config = _load(ctx)
        if not len(registry):
            click.echo("No targets found in pipeline file", err=True)
            sys.exit(1)

        config = _make_config(
            file_config,
            max_workers=jobs,
            workers=workers,
            backend=backend,
            dry_run=dry_run or None,
            force=force or None,
            force_patterns=list(force_patterns) or None,
            cached_patterns=list(cached_patterns) or None,
            error="continue" if keep_going else None,
            seed=seed,
            timeout=timeout,
            cancel_timeout=cancel_timeout,
            verbose=bool(ctx.obj["verbose"]) or None,
        )

        executor = ParallelExecutor(registry, config, output=sys.stderr, targets=list(targets))
        try:
            results = executor.execute()
        finally:
            executor.close()

        if dry_run:
            return

        summary = RunSummary.from_results(results)
        click.echo("\nSummary:", err=True)
        click.echo(f"  Total units: {summary.total}", err=True)
        click.echo(f"  Built: {summary.succeeded}", err=True)
        click.echo(f"  Skipped (up-to-date): {summary.skipped}", err=True)
        if summary.pending:
            click.echo(f"  Not started: {summary.pending}", err=True)
        if summary.failed:
            click.echo(f"  Failed: {summary.failed}", err=True)
            sys.exit(1)

    except TargetflowError as e:
        _fail(e)
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
        sys.exit(130)


# =============================================================================
# Status
# =============================================================================


@cli.command()
@click.argument("targets", nargs=-1)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, targets, as_json):
    """Show which targets are up-to-date and which would run."""
    try:
        registry, file_config = _load(ctx)
        config = _make_config(file_config, dry_run=True)
        executor = ParallelExecutor(registry, config, output=StringIO(), targets=list(targets))
        try:
            results = executor.execute()
        finally:
            executor.close()
    except TargetflowError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps({r.name: {"status": r.status, "reason": r.reason} for r in results}, indent=2))
        return

    stale = 0
    for r in results:
        if r.skipped:
            click.echo(f"✓ {r.name}: up-to-date")
        else:
            stale += 1
            click.echo(f"✗ {r.name}: {r.reason}")
    click.echo(f"\n{len(results) - stale} up-to-date, {stale} stale", err=True)


# =============================================================================
# Shape
# =============================================================================


def _parse_length(value: str) -> tuple[str, int | list[str]]:
    name, sep, rest = value.partition("=")
    if not sep or not name:
        raise click.BadParameter(f"expected NAME=COUNT or NAME=k1,k2,..., got {value!r}")
    try:
        return name, int(rest)
    except ValueError:
        return name, [k for k in rest.split(",") if k]


@cli.command()
@click.argument("target")
@click.option(
    "-l",
    "--length",
    "lengths",
    multiple=True,
    help="Slice count (NAME=3) or group keys (NAME=a,b) of a referenced target",
)
@click.option("--seed", type=int, default=None, help="Run seed for sample()")
@click.pass_context
def shape(ctx, target, lengths, seed):
    """Show the branches a pattern target would have, without running anything.

    Slice counts default to those of the last recorded build.
    """
    try:
        registry, file_config = _load(ctx)
        if target not in registry or registry[target].pattern is None:
            raise click.BadParameter(f"'{target}' is not a pattern target", param_hint="TARGET")
        spec = registry[target].pattern

        config = _make_config(file_config, seed=seed)
        sources = registry[target].get_pattern_names()
        arg_lengths = dict(_parse_length(v) for v in lengths)
        if set(sources) - set(arg_lengths):
            store = MetadataStore(config.resolve_root() / "meta.db")
            storage = LocalStorage(config.resolve_root())
            try:
                for name in sources:
                    if name not in arg_lengths:
                        arg_lengths[name] = _recorded_length(name, registry, store, storage)
            finally:
                store.close()
        branches = resolve_pattern_shape(spec, arg_lengths, name=target, run_seed=config.seed)
    except TargetflowError as e:
        _fail(e)

    click.echo(f"{target} = {describe(spec)}: {len(branches)} branch(es)")
    for i, combo in enumerate(branches):
        click.echo(f"  {i}: " + ", ".join(f"{name}[{idx}]" for name, idx in combo))


def _recorded_length(name: str, registry, store: MetadataStore, storage: LocalStorage):
    """Slice count (or group keys) of ``name`` from its last recorded build."""
    record = store.get(name)
    if record is None or not record.succeeded:
        raise click.UsageError(f"'{name}' has no successful build; pass --length {name}=N")
    if record.kind == "pattern":
        return len(record.branches)
    value = storage.load(record.location, record.format)
    if isinstance(value, GroupedValue):
        return list(value.keys)
    return len(slice_value(value, registry[name].iteration))


# =============================================================================
# Meta / errors
# =============================================================================


def _store(ctx) -> MetadataStore:
    _, file_config = _load(ctx)
    return MetadataStore(_make_config(file_config).resolve_root() / "meta.db")


@cli.command()
@click.argument("names", nargs=-1)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--branches/--no-branches", default=False, help="Include branch records")
@click.pass_context
def meta(ctx, names, as_json, branches):
    """Show recorded build metadata."""
    try:
        store = _store(ctx)
    except TargetflowError as e:
        _fail(e)
    try:
        records = store.records()
        if names:
            records = [r for r in records if r.name in names]
        elif not branches:
            records = [r for r in records if r.kind != "branch"]
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps([asdict(r) for r in records], indent=2, default=str))
        return

    if not records:
        click.echo("No records")
        return
    for r in records:
        marker = "✓" if r.succeeded else "✗"
        extra = f" ({len(r.branches)} branches)" if r.kind == "pattern" else ""
        click.echo(f"{marker} {r.name} [{r.kind}] {r.fingerprint[:8]} {r.seconds:.2f}s{extra}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def errors(ctx, as_json):
    """List targets and branches whose last build failed."""
    try:
        store = _store(ctx)
    except TargetflowError as e:
        _fail(e)
    try:
        failures = store.failures()
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps(
            [{"name": r.name, "kind": r.kind, "error_kind": r.error_kind, "message": r.error_message} for r in failures],
            indent=2,
        ))
        return

    if not failures:
        click.echo("No failures")
        return
    for r in failures:
        click.echo(f"✗ {r.name} [{r.kind}] {r.error_kind}: {r.error_message}")
    sys.exit(1)


# =============================================================================
# Prune
# =============================================================================


@cli.command("prune")
@click.option("-n", "--dry-run", is_flag=True, help="Only list what would be removed")
@click.pass_context
def prune_cmd(ctx, dry_run):
    """Remove records and stored values of deleted targets and dropped branches."""
    try:
        registry, file_config = _load(ctx)
        root = _make_config(file_config).resolve_root()
        store = MetadataStore(root / "meta.db")
        try:
            if dry_run:
                removed = store.orphans(registry.names())
            else:
                removed = prune(registry, store, LocalStorage(root))
        finally:
            store.close()
    except TargetflowError as e:
        _fail(e)

    verb = "Would remove" if dry_run else "Removed"
    for r in removed:
        click.echo(f"  {r.name} [{r.kind}]")
    click.echo(f"{verb} {len(removed)} record(s)")


def main():
    """Entry point for the CLI."""
    try:
        cli()
    except Exception:
        logger.exception("unexpected error")
        sys.exit(255)


if __name__ == "__main__":
    main()
