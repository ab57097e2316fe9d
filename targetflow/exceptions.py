"""Exceptions raised by targetflow."""

from collections.abc import Iterable, Mapping


class TargetflowError(Exception):
    """Base class for all targetflow errors."""


class InvalidTarget(TargetflowError):
    """A target descriptor failed validation."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid target '{name}': {reason}")


class PipelineFileError(TargetflowError):
    """A pipeline file could not be read or is malformed."""


class CyclicDependency(TargetflowError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class UnknownSymbol(TargetflowError):
    """A target references a name that is not in the registry."""

    def __init__(self, missing: Mapping[str, Iterable[str]]):
        # {missing name: names of the targets referencing it}
        self.missing = {name: sorted(refs) for name, refs in missing.items()}
        parts = [
            f"'{name}' (referenced by {', '.join(refs)})"
            for name, refs in sorted(self.missing.items())
        ]
        super().__init__(f"Unknown target(s): {'; '.join(parts)}")

    @property
    def names(self) -> list[str]:
        return sorted(self.missing)


class LengthMismatch(TargetflowError):
    """Arguments of map() have unequal slice counts."""

    def __init__(self, lengths: Mapping[str, int], pattern: str | None = None):
        self.lengths = dict(lengths)
        self.pattern = pattern
        desc = ", ".join(f"{k}={v}" for k, v in self.lengths.items())
        where = f" in pattern '{pattern}'" if pattern else ""
        super().__init__(f"map() arguments have unequal lengths{where}: {desc}")


class StaleFile(TargetflowError):
    """A tracked external file is missing or unreadable."""

    def __init__(self, paths: Iterable[str], name: str | None = None):
        self.paths = list(paths)
        self.name = name
        owner = f" for target '{name}'" if name else ""
        super().__init__(f"Missing file(s){owner}: {', '.join(self.paths)}")


class TargetRuntimeError(TargetflowError):
    """The computation of a target or branch raised."""

    def __init__(self, name: str, message: str, kind: str = "TargetRuntimeError"):
        self.name = name
        self.message = message
        self.kind = kind
        super().__init__(f"Target '{name}' failed: {message}")


class StorageError(TargetflowError):
    """A value could not be persisted or retrieved."""


class WorkerUnavailable(TargetflowError):
    """No worker could accept a unit of work."""
