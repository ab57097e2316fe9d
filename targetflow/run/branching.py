"""Dynamic branching: shape resolution, slicing and aggregation.

The shape resolver is pure. Given a pattern and the slice count of every
name it references, it returns the ordered list of branches as tuples of
``(name, index)`` pairs, without touching any data:

    >>> resolve_pattern_shape(Map("a", "b"), {"a": 3, "b": 3})
    [(('a', 0), ('b', 0)), (('a', 1), ('b', 1)), (('a', 2), ('b', 2))]

At run time :func:`plan_branches` feeds real slices through the same
resolver and derives each branch's stable identity from the identities of
the slices it consumes, so an unchanged slice always maps to the same
branch name and a changed slice only invalidates the branches reading it.
"""

from __future__ import annotations

import itertools
import random
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from targetflow.exceptions import LengthMismatch, UnknownSymbol
from targetflow.run.hash import derive_seed, hash_parts, hash_value
from targetflow.run.pattern import (
    Cross,
    Head,
    Map,
    Pattern,
    PatternArg,
    Sample,
    Tail,
    as_pattern,
    describe,
)

BranchShape = tuple[tuple[str, int], ...]


def _arg_length(name: str, arg_lengths: Mapping[str, int | Sequence[Any]]) -> int:
    if name not in arg_lengths:
        raise UnknownSymbol({name: {"<pattern>"}})
    value = arg_lengths[name]
    if isinstance(value, int) and not isinstance(value, bool):
        length = value
    else:
        # Group iteration passes the ordered group keys
        length = len(value)
    if length < 0:
        raise ValueError(f"Negative length for '{name}': {length}")
    return length


def _sample_seed(node: Sample, name: str, run_seed: int) -> int:
    return derive_seed(f"{name}|{describe(node)}|{node.seed}", run_seed)


def _resolve(
    arg: PatternArg,
    arg_lengths: Mapping[str, int | Sequence[Any]],
    name: str,
    run_seed: int,
) -> list[BranchShape]:
    if not isinstance(arg, Pattern):
        return [((arg, i),) for i in range(_arg_length(arg, arg_lengths))]

    if isinstance(arg, Map):
        parts = [_resolve(a, arg_lengths, name, run_seed) for a in arg.args]
        lengths = {describe(a): len(p) for a, p in zip(arg.args, parts)}
        if len(set(lengths.values())) > 1:
            raise LengthMismatch(lengths, pattern=name or None)
        return [sum(combo, ()) for combo in zip(*parts)]

    if isinstance(arg, Cross):
        parts = [_resolve(a, arg_lengths, name, run_seed) for a in arg.args]
        # itertools.product varies the rightmost argument fastest
        return [sum(combo, ()) for combo in itertools.product(*parts)]

    if isinstance(arg, Head):
        return _resolve(arg.pattern, arg_lengths, name, run_seed)[: arg.n]

    if isinstance(arg, Tail):
        inner = _resolve(arg.pattern, arg_lengths, name, run_seed)
        return inner[len(inner) - min(arg.n, len(inner)):]

    if isinstance(arg, Sample):
        inner = _resolve(arg.pattern, arg_lengths, name, run_seed)
        rng = random.Random(_sample_seed(arg, name, run_seed))
        picked = rng.sample(range(len(inner)), min(arg.n, len(inner)))
        return [inner[i] for i in sorted(picked)]

    raise TypeError(f"Unknown pattern node: {arg!r}")


def resolve_pattern_shape(
    spec: Pattern | PatternArg | Mapping[str, Any],
    arg_lengths: Mapping[str, int | Sequence[Any]],
    *,
    name: str = "",
    run_seed: int = 0,
) -> list[BranchShape]:
    """Resolve a pattern to its ordered list of branch input indices.

    Args:
        spec: Pattern (or its plain-data form, or a bare name)
        arg_lengths: Slice count per referenced name, or the ordered group
            keys for names iterated by group
        name: Name of the pattern target; seeds ``sample()``
        run_seed: Run-wide seed; seeds ``sample()``

    Returns:
        One tuple of ``(name, index)`` pairs per branch, 0-based, in
        creation order

    Raises:
        LengthMismatch: ``map()`` arguments have unequal lengths
        UnknownSymbol: A referenced name has no entry in ``arg_lengths``
    """
    return _resolve(as_pattern(spec), arg_lengths, name, run_seed)


# -- slicing ------------------------------------------------------------------


@dataclass
class GroupedValue:
    """Elements partitioned by group key.

    ``keys`` holds the distinct keys in ascending order; the group index of
    a key is its position there. ``groups[i]`` holds the elements with key
    ``keys[i]`` (a list of records, or a column table when built from one)
    and ``positions[i]`` their positions in the source.
    """

    keys: list[Any]
    groups: list[Any]
    positions: list[list[int]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.keys)

    def group_index(self, key: Any) -> int:
        return self.keys.index(key)


def is_table(value: Any) -> bool:
    """A column table: a non-empty mapping of equal-length lists."""
    if not isinstance(value, Mapping) or not value:
        return False
    columns = list(value.values())
    if not all(isinstance(c, list) for c in columns):
        return False
    return len({len(c) for c in columns}) == 1


def table_rows(table: Mapping[str, list]) -> list[dict[str, list]]:
    """Split a column table into single-row tables."""
    n = len(next(iter(table.values())))
    return [{col: [values[i]] for col, values in table.items()} for i in range(n)]


def assign_groups(records: Any, key: str | Callable[[Any], Any]) -> GroupedValue:
    """Partition ``records`` by ``key`` for group iteration.

    ``records`` is a list of mappings/objects or a column table. ``key`` is
    a field or column name, or a function of one record. Group indices
    follow ascending key order, not source order.
    """
    if is_table(records):
        rows = table_rows(records)
        get = key if callable(key) else (lambda row: row[key][0])
    else:
        rows = list(records)
        if callable(key):
            get = key
        else:
            def get(row):
                return row[key] if isinstance(row, Mapping) else getattr(row, key)

    by_key: dict[Any, list[int]] = {}
    for i, row in enumerate(rows):
        by_key.setdefault(get(row), []).append(i)

    keys = sorted(by_key)
    positions = [by_key[k] for k in keys]
    if is_table(records):
        groups = [
            {col: [values[i] for i in pos] for col, values in records.items()}
            for pos in positions
        ]
    else:
        groups = [[rows[i] for i in pos] for pos in positions]
    return GroupedValue(keys=keys, groups=groups, positions=positions)


def slice_value(value: Any, iteration: str) -> list[Any]:
    """Split a whole value into the slices branches iterate over."""
    if isinstance(value, GroupedValue):
        return list(value.groups)
    if iteration == "group":
        raise TypeError(
            "group iteration needs a GroupedValue (see assign_groups()), "
            f"got {type(value).__name__}"
        )
    if isinstance(value, (list, tuple)):
        return list(value)
    if iteration == "vector":
        if is_table(value):
            return table_rows(value)
        return [value]
    if isinstance(value, Mapping):
        return list(value.values())
    return [value]


@dataclass(frozen=True)
class Slice:
    """One element of an upstream value as seen by a pattern."""

    source: str
    index: int
    id: str
    key: Any = None


def make_slices(source: str, hashes: Sequence[str], keys: Sequence[Any] | None = None) -> list[Slice]:
    """Build slices with stable identities from per-slice content hashes.

    Identity depends on content (plus the group key when grouping, plus an
    occurrence counter among equal contents), not on position, so inserting
    an element upstream does not change the identity of the others.
    """
    seen: dict[str, int] = {}
    slices = []
    for i, content in enumerate(hashes):
        key = keys[i] if keys is not None else None
        marker = hash_parts(content, repr(key)) if keys is not None else content
        occurrence = seen.get(marker, 0)
        seen[marker] = occurrence + 1
        slice_id = hash_parts(source, marker, occurrence)
        slices.append(Slice(source=source, index=i, id=slice_id, key=key))
    return slices


def slices_of_value(source: str, value: Any, iteration: str) -> tuple[list[Slice], list[Any]]:
    """Slices of a stem's value plus the sliced values themselves."""
    values = slice_value(value, iteration)
    keys = value.keys if isinstance(value, GroupedValue) else None
    hashes = [hash_value(v) for v in values]
    return make_slices(source, hashes, keys), values


@dataclass(frozen=True)
class Branch:
    """A concrete branch of a pattern target."""

    name: str
    pattern: str
    index: int
    slices: tuple[Slice, ...]

    def slice_for(self, source: str) -> Slice | None:
        for s in self.slices:
            if s.source == source:
                return s
        return None


def branch_name(pattern: str, slice_ids: Sequence[str]) -> str:
    """Stable branch identity for ``pattern`` consuming ``slice_ids``."""
    return f"{pattern}_{hash_parts(pattern, list(slice_ids))[:8]}"


def plan_branches(
    pattern_name: str,
    spec: Pattern,
    slices: Mapping[str, Sequence[Slice]],
    run_seed: int = 0,
) -> list[Branch]:
    """Expand a pattern over concrete slices into its ordered branch list."""
    lengths: dict[str, int | Sequence[Any]] = {}
    for source, items in slices.items():
        keys = [s.key for s in items]
        lengths[source] = keys if any(k is not None for k in keys) else len(items)

    shape = resolve_pattern_shape(spec, lengths, name=pattern_name, run_seed=run_seed)

    branches = []
    for index, combo in enumerate(shape):
        chosen = tuple(slices[source][i] for source, i in combo)
        branches.append(Branch(
            name=branch_name(pattern_name, [s.id for s in chosen]),
            pattern=pattern_name,
            index=index,
            slices=chosen,
        ))
    return branches


# -- aggregation --------------------------------------------------------------


def _concat_tables(tables: Sequence[Mapping[str, list]]) -> dict[str, list]:
    columns = list(tables[0])
    out: dict[str, list] = {col: [] for col in columns}
    for table in tables:
        if list(table) != columns:
            raise ValueError(
                f"Cannot combine tables with columns {columns} and {list(table)}"
            )
        for col in columns:
            out[col].extend(table[col])
    return out


def combine_vector(values: Sequence[Any]) -> Any:
    """Concatenate branch values at their finest structural unit."""
    if values and all(is_table(v) for v in values):
        return _concat_tables(values)
    out: list[Any] = []
    for value in values:
        if isinstance(value, (list, tuple)):
            out.extend(value)
        else:
            out.append(value)
    return out


def aggregate(
    values: Sequence[Any],
    iteration: str,
    group_indices: Sequence[int | None] | None = None,
) -> Any:
    """Reassemble branch values (given in creation order) into one value.

    Args:
        values: Branch values in ascending creation index
        iteration: The pattern's iteration mode
        group_indices: For group iteration, the group index each branch
            consumed (``None`` if it consumed no grouped slice)
    """
    if iteration == "list":
        return list(values)
    if iteration == "group" and group_indices is not None:
        order = sorted(
            range(len(values)),
            key=lambda i: (group_indices[i] is None, group_indices[i] or 0, i),
        )
        values = [values[i] for i in order]
    return combine_vector(values)
