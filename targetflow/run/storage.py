"""Storage adapter: persist and retrieve target values.

Values are written under ``<root>/objects/<name>`` in the target's format.
Writes go to a temporary file first and are moved into place, so a reader
never sees a half-written object. The ``file`` format stores the ordered
list of paths a target produced; the paths themselves are tracked through
their hashes in the metadata store.
"""

import json
import os
import pickle
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from targetflow.exceptions import StorageError


def normalize_paths(value: Any) -> list[str]:
    """Coerce a ``file`` target's value to an ordered list of path strings."""
    if isinstance(value, (str, os.PathLike)):
        return [os.fspath(value)]
    if isinstance(value, (list, tuple)):
        paths = []
        for item in value:
            if not isinstance(item, (str, os.PathLike)):
                raise StorageError(f"file targets must return paths, got {item!r}")
            paths.append(os.fspath(item))
        return paths
    raise StorageError(f"file targets must return a path or list of paths, got {value!r}")


def _dump_pickle(value: Any, f):
    pickle.dump(value, f, protocol=4)


def _dump_json(value: Any, f):
    f.write(json.dumps(value, sort_keys=True).encode())


def _dump_yaml(value: Any, f):
    f.write(yaml.safe_dump(value, sort_keys=False, default_flow_style=False).encode())


def _dump_file(value: Any, f):
    f.write(json.dumps(normalize_paths(value)).encode())


CODECS: dict[str, tuple[Callable[[Any, Any], None], Callable[[bytes], Any]]] = {
    "pickle": (_dump_pickle, pickle.loads),
    "json": (_dump_json, lambda data: json.loads(data.decode())),
    "yaml": (_dump_yaml, lambda data: yaml.safe_load(data.decode())),
    "file": (_dump_file, lambda data: json.loads(data.decode())),
}


class LocalStorage:
    """Object store on the local filesystem."""

    def __init__(self, root: Path | str | None = None):
        if root is None:
            root = Path.cwd() / ".targetflow"
        self.root = Path(root)
        self.objects = self.root / "objects"

    def path(self, location: str) -> Path:
        return self.root / location

    def store(self, name: str, value: Any, format: str = "pickle") -> str:
        """Persist ``value`` and return its location (relative to root).

        Raises:
            StorageError: If the value can't be encoded or written
        """
        if format not in CODECS:
            raise StorageError(f"Unknown format '{format}'")
        dump, _ = CODECS[format]

        location = f"objects/{name}"
        dest = self.path(location)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f".{name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    dump(value, f)
                os.replace(tmp, dest)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except StorageError:
            raise
        # pickle raises AttributeError for local objects
        except (OSError, TypeError, ValueError, AttributeError, pickle.PicklingError, yaml.YAMLError) as e:
            raise StorageError(f"Failed to store '{name}' as {format}: {e}") from e
        return location

    def load(self, location: str, format: str = "pickle") -> Any:
        """Read back a stored value.

        Raises:
            StorageError: If the object is missing or can't be decoded
        """
        if format not in CODECS:
            raise StorageError(f"Unknown format '{format}'")
        _, load = CODECS[format]
        try:
            data = self.path(location).read_bytes()
            return load(data)
        except (OSError, ValueError, EOFError, pickle.UnpicklingError, yaml.YAMLError) as e:
            raise StorageError(f"Failed to load '{location}' as {format}: {e}") from e

    def exists(self, location: str | None) -> bool:
        return location is not None and self.path(location).exists()

    def changed(self, location: str | None, format: str = "pickle") -> bool:
        """Whether the stored object (or, for files, any tracked path) is gone."""
        if not self.exists(location):
            return True
        if format == "file":
            try:
                paths = self.load(location, format)
            except StorageError:
                return True
            return any(not Path(p).exists() for p in paths)
        return False

    def delete(self, location: str | None) -> bool:
        if not self.exists(location):
            return False
        self.path(location).unlink()
        return True
