"""Target descriptors and the registry that validates them."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from targetflow.exceptions import InvalidTarget
from targetflow.run.pattern import Pattern, as_pattern

FORMATS = ("pickle", "json", "yaml", "file")
ITERATION_MODES = ("vector", "list", "group")
LOCALITIES = ("main", "worker")
MEMORY_POLICIES = ("persistent", "transient")
ERROR_POLICIES = ("stop", "continue")
CUES = ("thorough", "always", "never")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


@dataclass
class Target:
    """A named unit of declared computation.

    ``command`` is either a callable, invoked with one keyword argument per
    dependency, or a shell command string in which ``${dep}`` placeholders
    are replaced by the dependency's value. A target is a pattern when it
    has a ``pattern``; otherwise it is a stem.

    A shell target with format ``file`` produces the paths in ``outs``
    (placeholders substituted), or the lines of its stdout.
    """

    name: str
    command: Callable[..., Any] | str
    deps: list[str] = field(default_factory=list)
    pattern: Pattern | None = None
    format: str = "pickle"
    iteration: str = "vector"
    resources: dict[str, Any] = field(default_factory=dict)
    deployment: str = "worker"
    memory: str = "persistent"
    storage: str = "main"
    retrieval: str = "main"
    error: str = "stop"
    cue: str = "thorough"
    outs: list[str] = field(default_factory=list)
    desc: str | None = None

    def __post_init__(self):
        self.deps = list(self.deps)
        self.outs = list(self.outs)
        self.resources = dict(self.resources)
        if self.pattern is not None and not isinstance(self.pattern, Pattern):
            self.pattern = as_pattern(self.pattern)

    def __hash__(self):
        return hash(self.name)

    def __eq__(self, other):
        if not isinstance(other, Target):
            return False
        return self.name == other.name

    @property
    def kind(self) -> str:
        return "pattern" if self.pattern is not None else "stem"

    @property
    def is_shell(self) -> bool:
        return isinstance(self.command, str)

    @property
    def timeout(self) -> float | None:
        value = self.resources.get("timeout")
        return float(value) if value is not None else None

    def get_dependency_names(self) -> list[str]:
        """Declared dependencies plus names used by the pattern, in order."""
        names = list(dict.fromkeys(self.deps))
        if self.pattern is not None:
            for leaf in self.pattern.leaves():
                if leaf not in names:
                    names.append(leaf)
        return names

    def get_pattern_names(self) -> list[str]:
        """Names the pattern iterates over (empty for stems)."""
        if self.pattern is None:
            return []
        return list(dict.fromkeys(self.pattern.leaves()))


def _check_choice(target: Target, attr: str, choices: tuple[str, ...]):
    value = getattr(target, attr)
    if value not in choices:
        raise InvalidTarget(
            target.name,
            f"{attr} must be one of {', '.join(choices)}, got {value!r}",
        )


def validate_target(target: Target) -> None:
    """Raise :class:`InvalidTarget` if ``target`` is not well formed."""
    if not isinstance(target.name, str) or not _NAME_RE.match(target.name):
        raise InvalidTarget(str(target.name), "name must start with a letter or underscore")

    if not (callable(target.command) or (isinstance(target.command, str) and target.command.strip())):
        raise InvalidTarget(target.name, "command must be a callable or a shell command")

    _check_choice(target, "format", FORMATS)
    _check_choice(target, "iteration", ITERATION_MODES)
    _check_choice(target, "deployment", LOCALITIES)
    _check_choice(target, "memory", MEMORY_POLICIES)
    _check_choice(target, "storage", LOCALITIES)
    _check_choice(target, "retrieval", LOCALITIES)
    _check_choice(target, "error", ERROR_POLICIES)
    _check_choice(target, "cue", CUES)

    if target.name in target.deps:
        raise InvalidTarget(target.name, "a target cannot depend on itself")

    if target.outs and not (target.is_shell and target.format == "file"):
        raise InvalidTarget(target.name, "outs only apply to shell commands with format 'file'")

    if target.pattern is not None:
        leaves = target.pattern.leaves()
        dupes = sorted({n for n in leaves if leaves.count(n) > 1})
        if dupes:
            raise InvalidTarget(
                target.name,
                f"pattern uses {', '.join(dupes)} more than once",
            )
        if target.name in leaves:
            raise InvalidTarget(target.name, "a pattern cannot iterate over itself")

    timeout = target.resources.get("timeout")
    if timeout is not None:
        try:
            ok = float(timeout) > 0
        except (TypeError, ValueError):
            ok = False
        if not ok:
            raise InvalidTarget(target.name, f"timeout must be a positive number, got {timeout!r}")


class Registry:
    """Ordered, validated collection of targets.

    Registration order is preserved; it breaks ties in the topological
    order so identical registries always run in the same order.
    """

    def __init__(self, targets: Iterable[Target] = ()):
        self._targets: dict[str, Target] = {}
        for target in targets:
            self.add(target)

    def add(self, target: Target) -> Target:
        validate_target(target)
        if target.name in self._targets:
            raise InvalidTarget(target.name, "duplicate target name")
        self._targets[target.name] = target
        return target

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)

    def __contains__(self, name: object) -> bool:
        return name in self._targets

    def __getitem__(self, name: str) -> Target:
        return self._targets[name]

    def get(self, name: str) -> Target | None:
        return self._targets.get(name)

    def names(self) -> list[str]:
        return list(self._targets)

    def index(self, name: str) -> int:
        """Registration position of ``name``."""
        return self.names().index(name)

    def subset(self, names: Iterable[str]) -> Registry:
        """New registry with only ``names``, keeping registration order."""
        wanted = set(names)
        return Registry(t for t in self if t.name in wanted)
