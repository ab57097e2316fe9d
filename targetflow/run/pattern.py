"""Pattern expressions for dynamic branching.

A pattern is a small tagged tree over target names:

    Map("a", "b")                      # a[i] with b[i]
    Cross("w", Map("x", "y"))          # every w with every (x, y) pair
    Head(Map("a"), 2)                  # first two branches
    Tail("a", 2)                       # last two slices of a
    Sample(Cross("a", "b"), 3, seed=1) # three reproducible picks

Leaves are plain strings naming upstream targets. Patterns are immutable
and hashable; their shape is resolved by
:func:`targetflow.run.branching.resolve_pattern_shape`.

Patterns can also be written as plain data (as in a pipeline file):

    {"cross": ["w", {"map": ["x", "y"]}]}
    {"head": {"pattern": {"map": ["a"]}, "n": 2}}
    {"sample": {"pattern": "a", "n": 2, "seed": 7}}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

PatternArg = Union[str, "Pattern"]


class Pattern:
    """Base class for pattern expression nodes."""

    op: str = ""

    def children(self) -> tuple[PatternArg, ...]:
        raise NotImplementedError

    def leaves(self) -> list[str]:
        """Target names referenced by this pattern, in order of appearance.

        Duplicates are kept so callers can reject them.
        """
        names: list[str] = []
        for child in self.children():
            if isinstance(child, Pattern):
                names.extend(child.leaves())
            else:
                names.append(child)
        return names

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError

    def __str__(self) -> str:
        return describe(self)


def _check_arg(arg: Any) -> PatternArg:
    if isinstance(arg, Pattern):
        return arg
    if isinstance(arg, str) and arg:
        return arg
    raise ValueError(f"Pattern arguments must be target names or patterns, got {arg!r}")


def _check_n(op: str, n: Any) -> int:
    if isinstance(n, bool) or not isinstance(n, int) or n < 0:
        raise ValueError(f"{op}() needs a non-negative integer n, got {n!r}")
    return n


@dataclass(frozen=True, init=False)
class Map(Pattern):
    """Iterate over several targets in lockstep."""

    args: tuple[PatternArg, ...]
    op = "map"

    def __init__(self, *args: PatternArg):
        if not args:
            raise ValueError("map() needs at least one argument")
        object.__setattr__(self, "args", tuple(_check_arg(a) for a in args))

    def children(self) -> tuple[PatternArg, ...]:
        return self.args

    def to_dict(self) -> dict[str, Any]:
        return {"map": [_arg_to_data(a) for a in self.args]}


@dataclass(frozen=True, init=False)
class Cross(Pattern):
    """Iterate over every combination of the arguments."""

    args: tuple[PatternArg, ...]
    op = "cross"

    def __init__(self, *args: PatternArg):
        if not args:
            raise ValueError("cross() needs at least one argument")
        object.__setattr__(self, "args", tuple(_check_arg(a) for a in args))

    def children(self) -> tuple[PatternArg, ...]:
        return self.args

    def to_dict(self) -> dict[str, Any]:
        return {"cross": [_arg_to_data(a) for a in self.args]}


@dataclass(frozen=True)
class Head(Pattern):
    """First ``n`` branches of ``pattern``."""

    pattern: PatternArg
    n: int
    op = "head"

    def __post_init__(self):
        object.__setattr__(self, "pattern", _check_arg(self.pattern))
        object.__setattr__(self, "n", _check_n("head", self.n))

    def children(self) -> tuple[PatternArg, ...]:
        return (self.pattern,)

    def to_dict(self) -> dict[str, Any]:
        return {"head": {"pattern": _arg_to_data(self.pattern), "n": self.n}}


@dataclass(frozen=True)
class Tail(Pattern):
    """Last ``n`` branches of ``pattern``."""

    pattern: PatternArg
    n: int
    op = "tail"

    def __post_init__(self):
        object.__setattr__(self, "pattern", _check_arg(self.pattern))
        object.__setattr__(self, "n", _check_n("tail", self.n))

    def children(self) -> tuple[PatternArg, ...]:
        return (self.pattern,)

    def to_dict(self) -> dict[str, Any]:
        return {"tail": {"pattern": _arg_to_data(self.pattern), "n": self.n}}


@dataclass(frozen=True)
class Sample(Pattern):
    """``n`` branches of ``pattern`` drawn without replacement."""

    pattern: PatternArg
    n: int
    seed: int | None = None
    op = "sample"

    def __post_init__(self):
        object.__setattr__(self, "pattern", _check_arg(self.pattern))
        object.__setattr__(self, "n", _check_n("sample", self.n))
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise ValueError(f"sample() seed must be an integer, got {self.seed!r}")

    def children(self) -> tuple[PatternArg, ...]:
        return (self.pattern,)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"pattern": _arg_to_data(self.pattern), "n": self.n}
        if self.seed is not None:
            data["seed"] = self.seed
        return {"sample": data}


def _arg_to_data(arg: PatternArg) -> Any:
    return arg.to_dict() if isinstance(arg, Pattern) else arg


def describe(arg: PatternArg) -> str:
    """Render a pattern as ``cross(w, map(x, y))``."""
    if not isinstance(arg, Pattern):
        return arg
    if isinstance(arg, (Map, Cross)):
        return f"{arg.op}({', '.join(describe(a) for a in arg.args)})"
    if isinstance(arg, Sample):
        seed = f", seed={arg.seed}" if arg.seed is not None else ""
        return f"sample({describe(arg.pattern)}, {arg.n}{seed})"
    return f"{arg.op}({describe(arg.pattern)}, {arg.n})"  # type: ignore[attr-defined]


def _unary_args(op: str, body: Any) -> dict[str, Any]:
    """Accept ``{pattern: p, n: 2}`` or ``[p, 2]`` (plus seed for sample)."""
    if isinstance(body, dict):
        if "pattern" not in body or "n" not in body:
            raise ValueError(f"{op}() needs 'pattern' and 'n'")
        return dict(body)
    if isinstance(body, (list, tuple)) and len(body) in (2, 3):
        keys = ["pattern", "n", "seed"][: len(body)]
        return dict(zip(keys, body))
    raise ValueError(f"Malformed {op}() arguments: {body!r}")


def from_data(data: Any) -> PatternArg:
    """Build a pattern (or a leaf name) from its plain-data form."""
    if isinstance(data, Pattern):
        return data
    if isinstance(data, str):
        return _check_arg(data)
    if not isinstance(data, dict) or len(data) != 1:
        raise ValueError(f"A pattern must be a name or a single-key mapping, got {data!r}")

    (op, body), = data.items()
    if op in ("map", "cross"):
        if not isinstance(body, (list, tuple)):
            body = [body]
        args = [from_data(a) for a in body]
        return Map(*args) if op == "map" else Cross(*args)

    if op in ("head", "tail", "sample"):
        kwargs = _unary_args(op, body)
        inner = from_data(kwargs.pop("pattern"))
        if op == "head":
            return Head(inner, kwargs["n"])
        if op == "tail":
            return Tail(inner, kwargs["n"])
        return Sample(inner, kwargs["n"], kwargs.get("seed"))

    raise ValueError(f"Unknown pattern operator '{op}'")


def as_pattern(data: Any) -> Pattern:
    """Like :func:`from_data` but a bare name becomes ``map(name)``."""
    arg = from_data(data)
    if isinstance(arg, Pattern):
        return arg
    return Map(arg)
