"""
targetflow
----------
Dependency-tracked computation pipelines with dynamic branching.
"""

import targetflow.log
from targetflow.run import (  # noqa: F401
    Cross,
    ExecutionConfig,
    Head,
    Map,
    Registry,
    Sample,
    Tail,
    Target,
    resolve_pattern_shape,
    run,
)

__version__ = "0.1.0"

targetflow.log.setup()
