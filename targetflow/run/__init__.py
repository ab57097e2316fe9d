"""targetflow run module - dependency tracking, branching and execution.

This module provides the engine:
- Target descriptors and the Registry that validates them
- The dependency DAG with reproducible topological order
- Patterns (map, cross, head, tail, sample) and the pure shape resolver
- Parallel execution with content-fingerprint change detection

Example usage:
    from targetflow.run import Map, Registry, Target, run

    def numbers():
        return [1, 2, 3]

    def square(numbers):
        return numbers ** 2

    registry = Registry([
        Target("numbers", numbers),
        Target("squares", square, pattern=Map("numbers")),
    ])
    run(registry)
"""

from targetflow.run.branching import (
    GroupedValue,
    aggregate,
    assign_groups,
    resolve_pattern_shape,
)
from targetflow.run.dag import DAG
from targetflow.run.executor import (
    ExecutionConfig,
    ExecutionResult,
    ParallelExecutor,
    RunSummary,
    prune,
    run,
)
from targetflow.run.meta import MetadataStore, Record
from targetflow.run.pattern import Cross, Head, Map, Sample, Tail
from targetflow.run.storage import LocalStorage
from targetflow.run.target import Registry, Target
from targetflow.run.workers import current_seed

__all__ = [
    "DAG",
    "Cross",
    "ExecutionConfig",
    "ExecutionResult",
    "GroupedValue",
    "Head",
    "LocalStorage",
    "Map",
    "MetadataStore",
    "ParallelExecutor",
    "Record",
    "Registry",
    "RunSummary",
    "Sample",
    "Tail",
    "Target",
    "aggregate",
    "assign_groups",
    "current_seed",
    "prune",
    "resolve_pattern_shape",
    "run",
]
