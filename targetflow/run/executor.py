"""Parallel executor for targets and their branches.

The coordinator walks the dependency graph, checks each target against its
stored record once all of its dependencies have resolved, and dispatches the
stale ones to a worker pool. There are no level barriers: a unit is queued
the moment its own dependencies are done, so a fast branch of the graph
never waits for a slow sibling.

Every target or branch moves through::

    pending -> queued -> running -> succeeded | failed | skipped-unchanged

Patterns are expanded on the coordinator when they become ready: their
upstream values are sliced, the shape resolver yields the branch list, and
each branch becomes its own unit. The pattern completes once all of its
branches have.
"""

import fnmatch
import heapq
import os
import sys
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

from targetflow.exceptions import (
    LengthMismatch,
    StaleFile,
    StorageError,
    TargetflowError,
    WorkerUnavailable,
)
from targetflow.log import logger
from targetflow.run.branching import Branch, aggregate, make_slices, plan_branches, slices_of_value
from targetflow.run.dag import DAG
from targetflow.run.hash import compute_fingerprint, derive_seed, hash_command, hash_parts, hash_value
from targetflow.run.meta import FAILED as RECORD_FAILED
from targetflow.run.meta import MetadataStore, Record
from targetflow.run.storage import LocalStorage
from targetflow.run.target import Registry, Target
from targetflow.run.workers import UnitOfWork, UnitResult, ValueRef, make_pool, run_unit

logger = logger.getChild(__name__)

PENDING = "pending"
QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped-unchanged"

TERMINAL_OK = (SUCCEEDED, SKIPPED)

UPSTREAM_FAILED = "UpstreamFailed"


@dataclass
class ExecutionResult:
    """Outcome of one target, pattern or branch in a run."""

    name: str
    kind: str  # stem, pattern, branch
    status: str
    reason: str = ""
    duration: float = 0.0
    parent: str | None = None
    error_kind: str | None = None

    @property
    def success(self) -> bool:
        return self.status in TERMINAL_OK

    @property
    def skipped(self) -> bool:
        return self.status == SKIPPED


@dataclass
class ExecutionConfig:
    """Configuration for execution."""

    max_workers: int | None = None
    workers: str = "persistent"  # persistent, transient
    backend: str = "thread"  # thread, process
    dry_run: bool = False
    force: bool = False
    force_patterns: list[str] = field(default_factory=list)
    cached_patterns: list[str] = field(default_factory=list)
    seed: int = 0
    error: str | None = None  # overrides every target's error policy
    timeout: float | None = None  # per unit, seconds
    cancel_timeout: float | None = None  # wait for in-flight units after a stop
    root: Path | None = None  # defaults to ./.targetflow
    verbose: bool = False

    def resolve_root(self) -> Path:
        return Path(self.root) if self.root is not None else Path.cwd() / ".targetflow"


@dataclass
class RunSummary:
    """Counts of stems and branches by outcome (patterns are not counted)."""

    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    pending: int = 0

    @classmethod
    def from_results(cls, results: list[ExecutionResult]) -> "RunSummary":
        summary = cls()
        for r in results:
            if r.kind == "pattern":
                continue
            if r.status == SUCCEEDED:
                summary.succeeded += 1
            elif r.status == SKIPPED:
                summary.skipped += 1
            elif r.status == FAILED:
                summary.failed += 1
            else:
                summary.pending += 1
        return summary

    @property
    def total(self) -> int:
        return self.succeeded + self.skipped + self.failed + self.pending


@dataclass
class _Unit:
    """Scheduler-side state of a target or branch."""

    name: str
    kind: str
    target: Target
    branch: Branch | None = None
    state: str = PENDING
    fingerprint: str | None = None
    output: str | None = None  # hash of the built value
    deps_fps: dict[str, str] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    deadline: float | None = None
    timeout: float | None = None
    seconds: float = 0.0
    pending_branches: int = 0
    failed_branches: int = 0

    @property
    def parent(self) -> str | None:
        return self.branch.pattern if self.branch is not None else None


def _matches_patterns(name: str, patterns: list[str]) -> bool:
    """Check if name matches any glob pattern."""
    return any(fnmatch.fnmatch(name, p) for p in patterns)


def _dep_key(fingerprint: str | None, data: str | None) -> str:
    """Key a dependent's fingerprint takes from one upstream unit.

    Covers the upstream fingerprint and the hash of its value, so a change
    to either reaches every descendant.
    """
    return hash_parts(fingerprint or "", data or fingerprint or "")


class ParallelExecutor:
    """Execute a registry of targets in parallel, respecting dependencies."""

    def __init__(
        self,
        registry: Registry | list[Target],
        config: ExecutionConfig | None = None,
        store: MetadataStore | None = None,
        storage: LocalStorage | None = None,
        output: TextIO | None = None,
        pool: Any = None,
        targets: list[str] | None = None,
    ):
        """Initialize parallel executor.

        Args:
            registry: Targets to build
            config: Execution configuration
            store: Metadata store (default: <root>/meta.db)
            storage: Storage adapter (default: LocalStorage(<root>))
            output: Stream for progress output (default: stderr)
            pool: Worker transport with ``submit``/``shutdown``; built from
                ``config`` when omitted
            targets: Restrict the run to these targets and their upstream

        Raises:
            UnknownSymbol: A dependency or pattern names a missing target
            CyclicDependency: The graph contains a cycle
        """
        self.config = config or ExecutionConfig()
        root = self.config.resolve_root()

        dag = DAG(registry)
        dag.validate()
        if targets:
            dag = dag.filter_to_targets(list(targets))
        self.dag = dag
        self.registry = dag.registry

        self._own_store = store is None
        self.store = store or MetadataStore(root / "meta.db")
        self.storage = storage or LocalStorage(root)
        self.output = output or sys.stderr
        self.pool = pool

        self.order = dag.topological_order()
        self._topo = {name: i for i, name in enumerate(self.order)}
        self._weights = dag.downstream_weights()
        self._command_hashes = {t.name: hash_command(t.command) for t in self.registry}
        self.max_workers = self.config.max_workers or os.cpu_count() or 1
        self._reset()

    def _reset(self):
        self.results: list[ExecutionResult] = []
        self.units: dict[str, _Unit] = {}
        self._waiting: dict[str, int] = {}
        self._ready: deque[str] = deque()
        self._queue: list[tuple] = []
        self._main_queue: list[tuple] = []
        self._seq = 0
        self._in_flight: dict[Future, _Unit] = {}
        self._values: dict[str, Any] = {}
        self._branches: dict[str, list[Branch]] = {}
        self._slice_values: dict[str, list[Any]] = {}
        self._halted = False
        self._halt_deadline: float | None = None
        # Timed-out or cancelled futures still holding a worker slot
        self._abandoned: set[Future] = set()
        self._abort: TargetflowError | None = None

    # -- public ---------------------------------------------------------------

    def execute(self) -> list[ExecutionResult]:
        """Build every stale target and branch.

        Returns:
            One ExecutionResult per stem, pattern and branch, in completion
            order, followed by units that never started

        Raises:
            LengthMismatch: A map() pattern met unequal slice counts; the
                failure is recorded and in-flight work drained first
        """
        if not self.order:
            self._log("No targets to build")
            return []

        levels = self.dag.topological_sort()
        self._log(f"Execution plan: {len(levels)} levels, {len(self.order)} targets")
        if self.config.verbose:
            for i, level in enumerate(levels, 1):
                self._log(f"  Level {i}: {', '.join(level)}")

        if self.config.dry_run:
            return self._dry_run()

        self._reset()
        pool = self.pool or make_pool(self.config.workers, self.max_workers, self.config.backend)
        try:
            self._loop(pool)
        finally:
            if self.pool is None:
                pool.shutdown(wait=not self._abandoned)

        if self._abort is not None:
            raise self._abort
        return self.results

    def read(self, name: str) -> Any:
        """Stored value of a target or branch (a pattern reads as its aggregate).

        Raises:
            StorageError: If ``name`` has no successful build
        """
        record = self.store.get(name)
        if record is None or not record.succeeded:
            raise StorageError(f"No stored value for '{name}'")
        if record.kind == "pattern":
            values = [self.read(b) for b in record.branches]
            return aggregate(
                values,
                self.registry[name].iteration,
                [self.store.get(b).group_index for b in record.branches],
            )
        return self.storage.load(record.location, record.format)

    def branches(self, pattern: str) -> list[Branch]:
        """Branches of ``pattern`` as planned in the last run."""
        return list(self._branches.get(pattern, []))

    def close(self):
        if self._own_store:
            self.store.close()

    # -- scheduling loop ------------------------------------------------------

    def _loop(self, pool):
        for name in self.order:
            target = self.registry[name]
            self.units[name] = _Unit(name=name, kind=target.kind, target=target)
            self._waiting[name] = len(self.dag.get_dependencies(name))

        self._ready.extend(name for name in self.order if self._waiting[name] == 0)

        while True:
            self._drain_ready()
            self._dispatch(pool)
            if not self._in_flight:
                if (self._ready or self._main_queue) and not self._halted:
                    continue
                if not (self._queue and self._abandoned and not self._halted):
                    break
            self._wait()

        self._finalize()

    def _drain_ready(self):
        """Check, expand or queue every unit whose dependencies just resolved."""
        while self._ready and not self._halted:
            unit = self.units[self._ready.popleft()]
            if unit.state == PENDING:
                self._on_ready(unit)

    def _dispatch(self, pool):
        """Start queued units while slots are free."""
        while not self._halted:
            if self._main_queue:
                _, _, name = heapq.heappop(self._main_queue)
                self._start(self.units[name], None)
            elif self._queue and self._busy() < self.max_workers:
                _, _, name = heapq.heappop(self._queue)
                self._start(self.units[name], pool)
            else:
                break

    def _wait(self):
        """Wait for the next completion or deadline."""
        deadlines = [u.deadline for u in self._in_flight.values() if u.deadline is not None]
        if self._halt_deadline is not None:
            deadlines.append(self._halt_deadline)
        timeout = max(0.0, min(deadlines) - time.monotonic()) if deadlines else None

        futures = list(self._in_flight) + list(self._abandoned)
        done, _ = wait(futures, timeout=timeout, return_when=FIRST_COMPLETED)
        for future in done:
            if future in self._abandoned:
                # Late result of a unit already failed; its slot is free again
                self._abandoned.discard(future)
                continue
            unit = self._in_flight.pop(future)
            try:
                result = future.result()
            except Exception as e:
                result = UnitResult(
                    name=unit.name,
                    success=False,
                    error_kind=WorkerUnavailable.__name__,
                    error_message=f"worker lost: {type(e).__name__}: {e}",
                )
            self._handle_result(unit, result)

        now = time.monotonic()
        for future, unit in list(self._in_flight.items()):
            if unit.deadline is not None and now >= unit.deadline:
                del self._in_flight[future]
                self._abandon(future)
                self._fail(unit, "TargetRuntimeError", f"timed out after {unit.timeout:g}s")

        if self._halt_deadline is not None and now >= self._halt_deadline:
            for future, unit in list(self._in_flight.items()):
                del self._in_flight[future]
                self._abandon(future)
                self._fail(unit, "TargetRuntimeError", "cancelled after the run was stopped")

    def _abandon(self, future: Future):
        if not future.cancel():
            self._abandoned.add(future)

    def _busy(self) -> int:
        """Worker slots taken, counting abandoned units that still run."""
        self._abandoned = {f for f in self._abandoned if not f.done()}
        return len(self._in_flight) + len(self._abandoned)

    def _finalize(self):
        """Settle patterns left waiting and report units that never started."""
        for name in self.order:
            unit = self.units[name]
            if unit.kind == "pattern" and unit.state == RUNNING:
                not_run = unit.pending_branches
                if unit.failed_branches:
                    self._fail(
                        unit,
                        "TargetRuntimeError",
                        f"{unit.failed_branches} branch(es) failed, {not_run} not started",
                    )

        for unit in self.units.values():
            if unit.state in (PENDING, QUEUED, RUNNING):
                unit.state = PENDING
                self.results.append(ExecutionResult(
                    name=unit.name,
                    kind=unit.kind,
                    status=PENDING,
                    reason="not started (run stopped)",
                    parent=unit.parent,
                ))

    # -- readiness ------------------------------------------------------------

    def _settings(self, target: Target, kind: str | None = None) -> dict[str, Any]:
        settings = {
            "kind": kind or target.kind,
            "format": target.format,
            "iteration": target.iteration,
            "outs": target.outs,
        }
        if kind != "branch":
            settings["pattern"] = target.pattern.to_dict() if target.pattern is not None else None
        return settings

    def _on_ready(self, unit: _Unit):
        """All dependencies are done: expand, skip or queue the unit."""
        target = unit.target
        unit.deps_fps = {
            dep: self._upstream_key(dep)
            for dep in target.get_dependency_names()
        }
        unit.settings = self._settings(target)

        if unit.kind == "pattern":
            self._expand(unit)
            return

        self._check_and_queue(unit)

    def _check_and_queue(self, unit: _Unit):
        command_hash = self._command_hashes[unit.target.name]
        unit.fingerprint = compute_fingerprint(command_hash, unit.settings, unit.deps_fps)

        stale, reason, record = self._should_run(unit)
        if not stale:
            unit.fingerprint = record.fingerprint
            unit.output = record.data or record.fingerprint
            self._finish(unit, SKIPPED, reason)
            return

        if self.config.verbose:
            self._log(f"  · {unit.name}: {reason}")
        self._enqueue(unit)

    def _should_run(self, unit: _Unit) -> tuple[bool, str, Record | None]:
        """Check if a unit must be built.

        Returns:
            Tuple of (should_run, reason, current record)
        """
        name = unit.name
        target = unit.target
        record = self.store.get(name)
        usable = (
            record is not None
            and record.succeeded
            and not self.storage.changed(record.location, record.format)
        )

        if usable and target.cue == "never":
            return False, "cue: never", record
        if usable and _matches_patterns(name, self.config.cached_patterns):
            return False, "cached by pattern", record

        if self.config.force or target.cue == "always":
            return True, "forced", record
        if _matches_patterns(name, self.config.force_patterns):
            return True, "forced by pattern", record

        stale, reason = self.store.is_stale(
            name,
            self._command_hashes[target.name],
            unit.settings,
            unit.deps_fps,
        )
        if stale:
            return True, reason, record
        if not usable:
            return True, "output missing", record
        return False, reason, record

    def _enqueue(self, unit: _Unit):
        unit.state = QUEUED
        owner = unit.parent or unit.name
        index = unit.branch.index if unit.branch is not None else 0
        # Most downstream work first, then topological order
        priority = (-self._weights.get(owner, 0), self._topo.get(owner, 0), index)
        queue = self._main_queue if unit.target.deployment == "main" else self._queue
        heapq.heappush(queue, (priority, self._seq, unit.name))
        self._seq += 1

    # -- patterns -------------------------------------------------------------

    def _expand(self, unit: _Unit):
        """Slice upstream values and create the pattern's branch units."""
        target = unit.target
        try:
            slices = {}
            for source in target.get_pattern_names():
                upstream = self.registry[source]
                if upstream.kind == "pattern":
                    records = [self.store.get(b.name) for b in self._branches[source]]
                    hashes = [r.data or r.fingerprint for r in records]
                    slices[source] = make_slices(source, hashes)
                else:
                    value = self._value(source)
                    slices[source], self._slice_values[source] = slices_of_value(
                        source, value, upstream.iteration,
                    )
            branches = plan_branches(target.name, target.pattern, slices, self.config.seed)
        except LengthMismatch as e:
            self._abort = e
            self._halt(unit.name, force=True)
            self._fail(unit, type(e).__name__, str(e))
            return
        except (StorageError, StaleFile) as e:
            self._fail(unit, type(e).__name__, str(e))
            return
        except (TypeError, ValueError) as e:
            self._fail(unit, "TargetRuntimeError", f"{type(e).__name__}: {e}")
            return

        self._branches[target.name] = branches
        unit.state = RUNNING
        unit.pending_branches = len(branches)
        self._log(f"  ⇉ {target.name}: {len(branches)} branch(es)")

        if not branches:
            self._finish_pattern(unit)
            return

        settings = self._settings(target, kind="branch")
        for branch in branches:
            branch_unit = _Unit(name=branch.name, kind="branch", target=target, branch=branch)
            branch_unit.settings = settings
            for dep in target.get_dependency_names():
                piece = branch.slice_for(dep)
                if piece is None:
                    branch_unit.deps_fps[dep] = self._upstream_key(dep)
                    continue
                source = self._branches[dep][piece.index].name if dep in self._branches else dep
                # Slice content plus the producer's fingerprint, not the whole upstream value
                branch_unit.deps_fps[dep] = hash_parts(piece.id, self.units[source].fingerprint)
            self.units[branch.name] = branch_unit

        for branch in branches:
            self._check_and_queue(self.units[branch.name])

    def _branch_done(self, unit: _Unit):
        parent = self.units[unit.parent]
        parent.pending_branches -= 1
        if unit.state == FAILED:
            parent.failed_branches += 1
        if parent.pending_branches == 0 and parent.state == RUNNING:
            self._finish_pattern(parent)

    def _finish_pattern(self, unit: _Unit):
        target = unit.target
        branches = self._branches.get(target.name, [])
        names = [b.name for b in branches]

        if unit.failed_branches:
            self._fail(
                unit,
                "TargetRuntimeError",
                f"{unit.failed_branches} of {len(branches)} branch(es) failed",
            )
            return

        fingerprint = compute_fingerprint(
            self._command_hashes[target.name],
            {**unit.settings, "branches": names},
            {name: self._upstream_key(name) for name in names},
        )
        unit.fingerprint = unit.output = fingerprint

        previous = self.store.get(target.name)
        if (
            previous is not None
            and previous.succeeded
            and previous.fingerprint == fingerprint
            and previous.branches == names
        ):
            self._finish(unit, SKIPPED, "up-to-date")
            return

        self.store.put(Record(
            name=target.name,
            kind="pattern",
            fingerprint=fingerprint,
            data=fingerprint,
            format=target.format,
            seed=derive_seed(target.name, self.config.seed),
            seconds=sum(self.units[n].seconds for n in names),
            branches=names,
        ))
        self._finish(unit, SUCCEEDED, f"{len(names)} branch(es)")

    def _upstream_key(self, name: str) -> str:
        unit = self.units[name]
        return _dep_key(unit.fingerprint, unit.output)

    @staticmethod
    def _group_index(branch: Branch | None) -> int | None:
        """Index of the group a branch consumed, if any."""
        if branch is None:
            return None
        grouped = [s.index for s in branch.slices if s.key is not None]
        return grouped[0] if grouped else None

    def _group_indices(self, branches: list[Branch]) -> list[int | None]:
        return [self._group_index(b) for b in branches]

    # -- values ---------------------------------------------------------------

    def _owner(self, name: str) -> Target:
        unit = self.units.get(name)
        if unit is not None:
            return unit.target
        return self.registry[name]

    def _value(self, name: str) -> Any:
        """Whole value of a target or branch, from memory or storage."""
        if name in self._values:
            return self._values[name]

        target = self._owner(name)
        if name in self._branches:
            branches = self._branches[name]
            value = aggregate(
                [self._value(b.name) for b in branches],
                target.iteration,
                self._group_indices(branches),
            )
        else:
            record = self.store.get(name)
            if record is None or not record.succeeded or record.location is None:
                raise StorageError(f"No stored value for '{name}'")
            value = self.storage.load(record.location, record.format)

        if target.memory == "persistent":
            self._values[name] = value
        return value

    def _ref(self, name: str) -> ValueRef:
        """Reference to a stored value, for workers doing their own retrieval."""
        if name in self._branches:
            branches = self._branches[name]
            parts = []
            for branch in branches:
                record = self.store.get(branch.name)
                parts.append((record.location, record.format))
            return ValueRef(
                parts=parts,
                iteration=self._owner(name).iteration,
                group_indices=self._group_indices(branches),
            )
        record = self.store.get(name)
        if record is None or record.location is None:
            raise StorageError(f"No stored value for '{name}'")
        return ValueRef(parts=[(record.location, record.format)])

    def _argument(self, unit: _Unit, dep: str) -> Any:
        worker_reads = unit.target.retrieval == "worker"
        piece = unit.branch.slice_for(dep) if unit.branch is not None else None

        if piece is None:
            if worker_reads and dep not in self._values:
                return self._ref(dep)
            return self._value(dep)

        if dep in self._branches:
            source_branch = self._branches[dep][piece.index].name
            if worker_reads and source_branch not in self._values:
                return self._ref(source_branch)
            return self._value(source_branch)
        return self._slice_values[dep][piece.index]

    def _make_work(self, unit: _Unit) -> UnitOfWork:
        target = unit.target
        kwargs = {dep: self._argument(unit, dep) for dep in target.get_dependency_names()}
        return UnitOfWork(
            name=unit.name,
            command=target.command,
            kwargs=kwargs,
            format=target.format,
            outs=list(target.outs),
            resources=dict(target.resources),
            seed=derive_seed(unit.name, self.config.seed),
            store_on_worker=target.storage == "worker",
            storage_root=str(self.storage.root),
        )

    # -- running --------------------------------------------------------------

    def _start(self, unit: _Unit, pool):
        try:
            work = self._make_work(unit)
        except (StorageError, StaleFile) as e:
            self._fail(unit, type(e).__name__, str(e))
            return

        unit.state = RUNNING
        self._log(f"  ⟳ {unit.name}: running...")

        if pool is None:
            # deployment=main: build on the coordinator
            self._handle_result(unit, run_unit(work))
            return

        unit.timeout = unit.target.timeout or self.config.timeout
        if unit.timeout:
            unit.deadline = time.monotonic() + unit.timeout
        try:
            future = pool.submit(work)
        except WorkerUnavailable as e:
            self._fail(unit, type(e).__name__, str(e))
            return
        self._in_flight[future] = unit

    def _handle_result(self, unit: _Unit, result: UnitResult):
        if not result.success:
            if self.config.verbose and result.traceback:
                logger.debug("%s failed:\n%s", unit.name, result.traceback)
            self._fail(unit, result.error_kind or "TargetRuntimeError", result.error_message or "", result.seconds)
            return

        target = unit.target
        try:
            if result.location is None:
                location = self.storage.store(unit.name, result.value, target.format)
                data = hash_value(result.value)
            else:
                location, data = result.location, result.data
            files: dict[str, str] = {}
            if target.format == "file":
                paths = result.value if result.value is not None else self.storage.load(location, "file")
                files = self.store.file_hashes(paths, name=unit.name)
                data = hash_parts(data, files)
        except (StorageError, StaleFile) as e:
            self._fail(unit, type(e).__name__, str(e), result.seconds)
            return

        unit.fingerprint = compute_fingerprint(
            self._command_hashes[target.name], unit.settings, unit.deps_fps, files,
        )
        unit.output = data
        self.store.put(Record(
            name=unit.name,
            kind=unit.kind,
            fingerprint=unit.fingerprint,
            parent=unit.parent,
            index=unit.branch.index if unit.branch is not None else None,
            group_index=self._group_index(unit.branch),
            data=data,
            format=target.format,
            location=location,
            seconds=result.seconds,
            seed=derive_seed(unit.name, self.config.seed),
            files=files,
        ))
        if target.memory == "persistent" and result.value is not None:
            self._values[unit.name] = result.value
        self._finish(unit, SUCCEEDED, f"completed ({result.seconds:.1f}s)", result.seconds)

    def _finish(self, unit: _Unit, status: str, reason: str, duration: float = 0.0):
        unit.state = status
        unit.seconds = duration
        self.results.append(ExecutionResult(
            name=unit.name,
            kind=unit.kind,
            status=status,
            reason=reason,
            duration=duration,
            parent=unit.parent,
        ))
        marker = "✓" if status == SUCCEEDED else "○"
        if status == SUCCEEDED or self.config.verbose:
            self._log(f"  {marker} {unit.name}: {reason}")

        if unit.kind == "branch":
            self._branch_done(unit)
            return

        for dependent in sorted(self.dag.get_dependents(unit.name), key=self._topo.__getitem__):
            self._waiting[dependent] -= 1
            if self._waiting[dependent] == 0 and not self._halted:
                self._ready.append(dependent)

    # -- failures -------------------------------------------------------------

    def _fail(self, unit: _Unit, kind: str, message: str, duration: float = 0.0):
        """Record a failure durably, then apply the error policy."""
        target = unit.target
        self.store.put(Record(
            name=unit.name,
            kind=unit.kind,
            fingerprint=unit.fingerprint or "",
            status=RECORD_FAILED,
            parent=unit.parent,
            index=unit.branch.index if unit.branch is not None else None,
            group_index=self._group_index(unit.branch),
            format=target.format,
            error_kind=kind,
            error_message=message,
            seconds=duration,
            seed=derive_seed(unit.name, self.config.seed),
            branches=[b.name for b in self._branches.get(unit.name, [])],
        ))

        unit.state = FAILED
        self.results.append(ExecutionResult(
            name=unit.name,
            kind=unit.kind,
            status=FAILED,
            reason=message,
            duration=duration,
            parent=unit.parent,
            error_kind=kind,
        ))
        self._log(f"  ✗ {unit.name}: {kind}: {message}")

        policy = self.config.error or target.error
        if unit.kind == "branch":
            if policy == "stop":
                self._halt(unit.name)
            self._branch_done(unit)
            return

        self._cascade(unit.name)
        if policy == "stop":
            self._halt(unit.name)

    def _cascade(self, name: str):
        """Fail every not-yet-started unit downstream of ``name``.

        Each gets a failed record; a previously stored value stays referenced
        by it until the unit is rebuilt.
        """
        message = f"upstream '{name}' failed"
        units = [
            self.units[dependent]
            for dependent in sorted(self.dag.descendants(name), key=self._topo.__getitem__)
            if self.units[dependent].state in (PENDING, QUEUED)
        ]
        if not units:
            return

        records = []
        for unit in units:
            previous = self.store.get(unit.name)
            records.append(Record(
                name=unit.name,
                kind=unit.kind,
                fingerprint=previous.fingerprint if previous else "",
                status=RECORD_FAILED,
                parent=unit.parent,
                data=previous.data if previous else None,
                format=unit.target.format,
                location=previous.location if previous else None,
                error_kind=UPSTREAM_FAILED,
                error_message=message,
                seed=derive_seed(unit.name, self.config.seed),
                branches=previous.branches if previous else [],
                files=previous.files if previous else {},
            ))
        self.store.put_many(records)

        for unit in units:
            unit.state = FAILED
            self.results.append(ExecutionResult(
                name=unit.name,
                kind=unit.kind,
                status=FAILED,
                reason=message,
                parent=unit.parent,
                error_kind=UPSTREAM_FAILED,
            ))
            self._log(f"  ✗ {unit.name}: {message}")

    def _halt(self, name: str, force: bool = False):
        """Stop dispatching new work after a failure."""
        if self._halted:
            return
        self._halted = True
        if self.config.cancel_timeout is not None:
            self._halt_deadline = time.monotonic() + self.config.cancel_timeout
        reason = "aborting" if force else "error policy 'stop'"
        self._log(f"\nStopping after failure of {name} ({reason})")
        for _, _, queued in self._queue + self._main_queue:
            if self.units[queued].state == QUEUED:
                self.units[queued].state = PENDING
        self._queue.clear()
        self._main_queue.clear()

    # -- dry run --------------------------------------------------------------

    def _dry_run(self) -> list[ExecutionResult]:
        """Report what would run, from stored records alone."""
        self._log("\nDry run - showing what would execute:")
        results = []
        would_run: set[str] = set()

        for name in self.order:
            target = self.registry[name]
            upstream = [d for d in target.get_dependency_names() if d in would_run]
            record = self.store.get(name)

            if upstream:
                stale, reason = True, f"upstream changed: {upstream[0]}"
            elif target.kind == "pattern":
                stale, reason = self._dry_run_pattern(record)
            else:
                unit = _Unit(name=name, kind=target.kind, target=target)
                unit.settings = self._settings(target)
                unit.deps_fps = {}
                for dep in target.get_dependency_names():
                    dep_record = self.store.get(dep)
                    unit.deps_fps[dep] = _dep_key(dep_record.fingerprint, dep_record.data) if dep_record else ""
                stale, reason, _ = self._should_run(unit)

            if stale:
                would_run.add(name)
            status = PENDING if stale else SKIPPED
            self._log(f"  {name}: {'would run' if stale else 'skip'} ({reason})")
            results.append(ExecutionResult(name=name, kind=target.kind, status=status, reason=reason))
        return results

    def _dry_run_pattern(self, record: Record | None) -> tuple[bool, str]:
        if record is None:
            return True, "no record"
        if not record.succeeded:
            return True, f"last build failed ({record.error_kind})"
        if self.config.force:
            return True, "forced"
        for branch_name in record.branches:
            branch = self.store.get(branch_name)
            if branch is None or not branch.succeeded:
                return True, f"branch {branch_name} not built"
            if self.storage.changed(branch.location, branch.format):
                return True, f"branch {branch_name} output missing"
        return False, "up-to-date"

    def _log(self, message: str):
        """Write log message to output stream."""
        print(message, file=self.output)


def run(
    registry: Registry | list[Target],
    config: ExecutionConfig | None = None,
    targets: list[str] | None = None,
    output: TextIO | None = None,
) -> list[ExecutionResult]:
    """Build ``registry`` (or just ``targets`` and their upstream).

    This is the main entry point for `targetflow run`.
    """
    executor = ParallelExecutor(registry, config, output=output, targets=targets)
    try:
        return executor.execute()
    finally:
        executor.close()


def prune(
    registry: Registry | list[Target],
    store: MetadataStore,
    storage: LocalStorage,
) -> list[Record]:
    """Delete records and stored objects no longer reachable from ``registry``."""
    if not isinstance(registry, Registry):
        registry = Registry(registry)
    removed = store.prune(registry.names())
    for record in removed:
        storage.delete(record.location)
    return removed
