"""Package logger and verbosity helpers."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger("targetflow")

_FORMAT = "%(levelname)s: %(message)s"


def setup(level: int = logging.INFO) -> None:
    """Attach a stderr handler to the package logger (idempotent)."""
    if any(getattr(h, "_targetflow", False) for h in logger.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._targetflow = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


@contextmanager
def set_loggers_level(level: int) -> Iterator[None]:
    """Temporarily set the package logger level."""
    old = logger.level
    logger.setLevel(level)
    try:
        yield
    finally:
        logger.setLevel(old)
