"""Parser for targetflow.yaml pipeline files.

A pipeline file lists targets in order under ``targets``, plus an optional
``config`` block of execution settings::

    config:
      max_workers: 4
      seed: 7

    targets:
      raw:
        command: "pipeline.steps:load"
      clean:
        command: "pipeline.steps:clean"
        deps: [raw]
      fit:
        command: "pipeline.steps:fit"
        pattern: {cross: [clean, {map: [alpha, beta]}]}
        iteration: list
      report:
        cmd: "summarize ${fit} > report.txt"
        format: file
        outs: [report.txt]

``command`` names an importable callable as ``module:attribute``; modules
next to the pipeline file are importable. ``cmd`` is a shell command (a
list is joined with ``&&``).
"""

import importlib
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from targetflow.exceptions import InvalidTarget, PipelineFileError
from targetflow.log import logger
from targetflow.run.executor import ExecutionConfig
from targetflow.run.target import Registry, Target

logger = logger.getChild(__name__)

DEFAULT_PIPELINE = "targetflow.yaml"

# Keys a target entry may carry besides command/cmd
_TARGET_KEYS = {
    "deps", "pattern", "format", "iteration", "resources", "deployment",
    "memory", "storage", "retrieval", "error", "cue", "outs", "desc",
}


@dataclass
class Pipeline:
    """Targets and execution settings read from a pipeline file."""

    path: Path
    registry: Registry
    config: dict[str, Any] = field(default_factory=dict)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _plain(value: Any) -> Any:
    """Convert ruamel containers to plain dicts and lists."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class PipelineParser:
    """Parse targetflow.yaml files into a :class:`Registry`."""

    def __init__(self, path: Path = Path(DEFAULT_PIPELINE)):
        self.path = Path(path)

    def parse(self) -> Pipeline:
        """Parse the pipeline file.

        Returns:
            Pipeline with the validated registry and the ``config`` block

        Raises:
            PipelineFileError: If the file is missing, malformed, or a
                target is invalid
        """
        if not self.path.exists():
            raise PipelineFileError(f"Pipeline file not found at {self.path}")

        yaml = YAML(typ="safe")
        try:
            with open(self.path) as f:
                data = yaml.load(f)
        except YAMLError as e:
            raise PipelineFileError(f"Malformed YAML in {self.path}: {e}") from e

        data = _plain(data)
        if not isinstance(data, dict) or "targets" not in data:
            raise PipelineFileError(f"{self.path} must contain a 'targets' section")
        if not isinstance(data["targets"], dict):
            raise PipelineFileError("'targets' must be a mapping of name to definition")

        config = data.get("config") or {}
        self._check_config(config)

        registry = Registry()
        for name, entry in data["targets"].items():
            try:
                registry.add(self._parse_target(name, entry or {}))
            except (InvalidTarget, ValueError, TypeError) as e:
                raise PipelineFileError(f"Target '{name}': {e}") from e

        logger.debug("parsed %d target(s) from %s", len(registry), self.path)
        return Pipeline(path=self.path, registry=registry, config=config)

    def _check_config(self, config: Any):
        if not isinstance(config, dict):
            raise PipelineFileError("'config' must be a mapping")
        known = {f.name for f in fields(ExecutionConfig)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise PipelineFileError(f"Unknown config key(s): {', '.join(unknown)}")

    def _parse_target(self, name: str, entry: dict[str, Any]) -> Target:
        """Parse a single target entry.

        Raises:
            PipelineFileError: If the entry has no command or unknown keys
        """
        if not isinstance(entry, dict):
            raise PipelineFileError(f"Target '{name}' must be a mapping")

        if ("command" in entry) == ("cmd" in entry):
            raise PipelineFileError(f"Target '{name}' needs exactly one of 'command' or 'cmd'")

        unknown = sorted(set(entry) - _TARGET_KEYS - {"command", "cmd"})
        if unknown:
            raise PipelineFileError(f"Target '{name}' has unknown key(s): {', '.join(unknown)}")

        if "cmd" in entry:
            command = entry["cmd"]
            if isinstance(command, list):
                command = " && ".join(command)
        else:
            command = self._import(name, entry["command"])

        kwargs = {k: v for k, v in entry.items() if k in _TARGET_KEYS}
        kwargs["deps"] = _as_list(kwargs.get("deps"))
        kwargs["outs"] = _as_list(kwargs.get("outs"))
        return Target(name=name, command=command, **kwargs)

    def _import(self, name: str, ref: Any):
        """Resolve ``module:attribute`` to a callable."""
        if not isinstance(ref, str) or ":" not in ref:
            raise PipelineFileError(
                f"Target '{name}': command must look like 'module:function', got {ref!r}"
            )
        module_name, _, attr = ref.partition(":")

        base = str(self.path.resolve().parent)
        if base not in sys.path:
            sys.path.insert(0, base)

        try:
            obj = importlib.import_module(module_name)
            for part in attr.split("."):
                obj = getattr(obj, part)
        except (ImportError, AttributeError) as e:
            raise PipelineFileError(f"Target '{name}': cannot import {ref}: {e}") from e

        if not callable(obj):
            raise PipelineFileError(f"Target '{name}': {ref} is not callable")
        return obj
