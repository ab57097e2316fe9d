"""MD5 fingerprints for files, values, commands and targets.

Every fingerprint is a pure function of its inputs: the same command, the
same settings and the same upstream fingerprints always give the same
digest, which is what lets a rerun skip unchanged work.
"""

import functools
import hashlib
import inspect
import json
import pickle
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any


def compute_md5(file_path: Path) -> str:
    """Compute MD5 hash of a file or directory.

    For files: MD5 of contents
    For directories: MD5 of {relpath: md5} JSON

    Raises:
        FileNotFoundError: If file_path doesn't exist
        ValueError: If file_path is neither file nor directory
    """
    if not file_path.exists():
        raise FileNotFoundError(f"{file_path} not found")

    if file_path.is_file():
        return _hash_file(file_path)
    elif file_path.is_dir():
        return _hash_directory(file_path)
    else:
        raise ValueError(f"{file_path} is neither file nor directory")


def _hash_file(file_path: Path) -> str:
    md5 = hashlib.md5()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            md5.update(chunk)
    return md5.hexdigest()


def _hash_directory(dir_path: Path) -> str:
    """Hash a directory by hashing the JSON of its {relpath: md5} mapping."""
    file_hashes = {}

    for subfile in sorted(dir_path.rglob('*')):
        if subfile.is_file():
            rel_path = subfile.relative_to(dir_path)
            # Forward slashes so the digest is the same on every platform
            rel_path_str = str(rel_path).replace('\\', '/')
            file_hashes[rel_path_str] = _hash_file(subfile)

    json_str = json.dumps(file_hashes, sort_keys=True, separators=(',', ':'))
    return hashlib.md5(json_str.encode()).hexdigest()


def hash_parts(*parts: Any) -> str:
    """MD5 of the canonical JSON encoding of ``parts``."""
    json_str = json.dumps(parts, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.md5(json_str.encode()).hexdigest()


def hash_value(value: Any) -> str:
    """Content hash of an in-memory value.

    JSON-encodable values hash by their canonical JSON (so dict key order
    does not matter); anything else hashes by its pickle.
    """
    try:
        payload = b"j" + json.dumps(value, sort_keys=True, separators=(',', ':')).encode()
    except (TypeError, ValueError):
        payload = b"p" + pickle.dumps(value, protocol=4)
    return hashlib.md5(payload).hexdigest()


def _describe_callable(fn: Callable[..., Any]) -> Any:
    if isinstance(fn, functools.partial):
        return [
            "partial",
            _describe_callable(fn.func),
            hash_value(fn.args),
            hash_value(dict(sorted(fn.keywords.items()))),
        ]

    target = inspect.unwrap(fn)
    name = f"{getattr(target, '__module__', '')}.{getattr(target, '__qualname__', repr(target))}"
    try:
        source = inspect.getsource(target)
    except (OSError, TypeError):
        code = getattr(target, "__code__", None)
        if code is None:
            return [name]
        source = code.co_code.hex() + repr(code.co_consts)
    return [name, source]


def hash_command(command: Callable[..., Any] | str) -> str:
    """Hash the code behind a target.

    Shell commands hash by their text; callables by qualified name plus
    source (or bytecode when the source is unavailable).
    """
    if isinstance(command, str):
        return hash_parts("cmd", command)
    return hash_parts("fn", _describe_callable(command))


def compute_fingerprint(
    command_hash: str,
    settings: Mapping[str, Any],
    deps: Mapping[str, str],
    files: Mapping[str, str] | None = None,
) -> str:
    """Fingerprint of a target or branch.

    Args:
        command_hash: Result of :func:`hash_command`
        settings: Format, iteration mode, pattern and similar options
        deps: ``{name: fingerprint}`` of upstream targets or slices
        files: ``{path: md5}`` of tracked external files
    """
    return hash_parts(command_hash, dict(settings), dict(deps), dict(files or {}))


def derive_seed(name: str, run_seed: int = 0) -> int:
    """Deterministic 31-bit seed for ``name`` under ``run_seed``."""
    digest = hashlib.md5(f"{run_seed}:{name}".encode()).hexdigest()
    return int(digest[:8], 16) & 0x7FFFFFFF
