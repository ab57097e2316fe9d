"""Worker pools and the unit of work they execute.

A :class:`UnitOfWork` is self-contained: the computation, its resolved
dependency values (or references to stored values, when the worker does
its own retrieval) and the settings needed to persist the result. Any
object with ``submit(unit) -> Future`` and ``shutdown(wait)`` can act as a
worker transport; two local ones are provided:

- :class:`PersistentWorkerPool` starts its workers once per run and feeds
  them units until the run ends.
- :class:`TransientWorkerPool` starts a fresh single-use worker per unit and
  tears it down when the unit completes.

Both run on threads by default, or on processes (``backend="process"``),
in which case commands and values must be picklable.
"""

import re
import subprocess
import threading
import time
import traceback
from collections.abc import Callable
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from targetflow.exceptions import (
    StaleFile,
    TargetflowError,
    TargetRuntimeError,
    WorkerUnavailable,
)
from targetflow.log import logger
from targetflow.run.branching import aggregate
from targetflow.run.hash import hash_value
from targetflow.run.storage import LocalStorage, normalize_paths

logger = logger.getChild(__name__)

BACKENDS = ("thread", "process")
WORKER_MODES = ("persistent", "transient")

_context = threading.local()


def current_seed() -> int | None:
    """Seed of the target or branch running on this worker thread."""
    return getattr(_context, "seed", None)


@dataclass
class ValueRef:
    """A dependency value the worker loads from storage itself.

    One part is a whole value; several parts are branch values aggregated
    with ``iteration`` (and ``group_indices`` for group iteration).
    """

    parts: list[tuple[str, str]]  # (location, format)
    iteration: str | None = None
    group_indices: list[int | None] | None = None


@dataclass
class UnitOfWork:
    """Everything a worker needs to build one target or branch."""

    name: str
    command: Callable[..., Any] | str
    kwargs: dict[str, Any] = field(default_factory=dict)
    format: str = "pickle"
    outs: list[str] = field(default_factory=list)
    resources: dict[str, Any] = field(default_factory=dict)
    seed: int | None = None
    store_on_worker: bool = False
    storage_root: str | None = None


@dataclass
class UnitResult:
    """Outcome reported back by a worker."""

    name: str
    success: bool
    value: Any = None
    location: str | None = None
    data: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    traceback: str | None = None
    seconds: float = 0.0


def _substitute(template: str, values: dict[str, Any]) -> str:
    """Replace ``${name}`` placeholders with dependency values."""

    def render(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        if isinstance(value, (list, tuple)):
            return " ".join(str(v) for v in value)
        return str(value)

    return re.sub(r"\$\{([A-Za-z_][A-Za-z0-9_.\-]*)\}", render, template)


def _run_shell(unit: UnitOfWork, kwargs: dict[str, Any]) -> Any:
    cmd = _substitute(unit.command, kwargs)
    result = subprocess.run(
        cmd,
        shell=True,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        stderr = result.stderr.strip()[:200] if result.stderr else ""
        raise TargetRuntimeError(
            unit.name,
            f"command failed with exit code {result.returncode}: {stderr}",
        )
    if unit.format == "file":
        if unit.outs:
            return [_substitute(out, kwargs) for out in unit.outs]
        return [line for line in result.stdout.splitlines() if line.strip()]
    return result.stdout.strip()


def _resolve_kwargs(unit: UnitOfWork, storage: LocalStorage | None) -> dict[str, Any]:
    kwargs = {}
    for key, value in unit.kwargs.items():
        if isinstance(value, ValueRef):
            if storage is None:
                storage = LocalStorage(unit.storage_root)
            parts = [storage.load(location, fmt) for location, fmt in value.parts]
            if value.iteration is None:
                value = parts[0]
            else:
                value = aggregate(parts, value.iteration, value.group_indices)
        kwargs[key] = value
    return kwargs


def run_unit(unit: UnitOfWork) -> UnitResult:
    """Build one unit of work. Never raises: failures become results."""
    start = time.time()
    storage = LocalStorage(unit.storage_root) if unit.storage_root is not None else None
    _context.seed = unit.seed
    try:
        kwargs = _resolve_kwargs(unit, storage)
        if isinstance(unit.command, str):
            value = _run_shell(unit, kwargs)
        else:
            value = unit.command(**kwargs)

        if unit.format == "file":
            value = normalize_paths(value)
            missing = [p for p in value if not Path(p).exists()]
            if missing:
                raise StaleFile(missing, name=unit.name)

        result = UnitResult(name=unit.name, success=True, value=value)
        if unit.store_on_worker:
            if storage is None:
                storage = LocalStorage()
            result.location = storage.store(unit.name, value, unit.format)
            result.data = hash_value(value)
            result.value = None
    except Exception as e:
        if isinstance(e, TargetRuntimeError):
            kind, message = e.kind, e.message
        elif isinstance(e, TargetflowError):
            kind, message = type(e).__name__, str(e)
        else:
            kind, message = "TargetRuntimeError", f"{type(e).__name__}: {e}"
        result = UnitResult(
            name=unit.name,
            success=False,
            error_kind=kind,
            error_message=message,
            traceback=traceback.format_exc(),
        )
    finally:
        _context.seed = None
    result.seconds = time.time() - start
    return result


def _make_executor(backend: str, max_workers: int | None) -> Executor:
    if backend == "process":
        return ProcessPoolExecutor(max_workers=max_workers)
    return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="targetflow")


class PersistentWorkerPool:
    """A fixed pool launched once and reused for every unit of the run."""

    def __init__(self, max_workers: int | None = None, backend: str = "thread"):
        self.max_workers = max_workers
        self.backend = backend
        self._executor = _make_executor(backend, max_workers)

    def submit(self, unit: UnitOfWork) -> Future:
        try:
            return self._executor.submit(run_unit, unit)
        except (RuntimeError, BrokenProcessPool) as e:
            raise WorkerUnavailable(f"Cannot submit '{unit.name}': {e}") from e

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


class TransientWorkerPool:
    """One single-use worker per unit, torn down on completion."""

    def __init__(self, max_workers: int | None = None, backend: str = "thread"):
        self.max_workers = max_workers
        self.backend = backend
        self._live: set[Executor] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, unit: UnitOfWork) -> Future:
        with self._lock:
            if self._closed:
                raise WorkerUnavailable(f"Cannot submit '{unit.name}': pool is shut down")
        try:
            executor = _make_executor(self.backend, 1)
            future = executor.submit(run_unit, unit)
        except (OSError, RuntimeError, BrokenProcessPool) as e:
            raise WorkerUnavailable(f"Cannot launch worker for '{unit.name}': {e}") from e

        with self._lock:
            self._live.add(executor)

        def teardown(_future: Future):
            with self._lock:
                self._live.discard(executor)
            executor.shutdown(wait=False)

        future.add_done_callback(teardown)
        return future

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._closed = True
            live = list(self._live)
        for executor in live:
            executor.shutdown(wait=wait, cancel_futures=not wait)


def make_pool(mode: str = "persistent", max_workers: int | None = None, backend: str = "thread"):
    """Build a local worker pool for ``mode`` and ``backend``."""
    if mode not in WORKER_MODES:
        raise ValueError(f"workers must be one of {', '.join(WORKER_MODES)}, got {mode!r}")
    if backend not in BACKENDS:
        raise ValueError(f"backend must be one of {', '.join(BACKENDS)}, got {backend!r}")
    if mode == "transient":
        return TransientWorkerPool(max_workers, backend)
    return PersistentWorkerPool(max_workers, backend)
