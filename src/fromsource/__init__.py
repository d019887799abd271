"""fromsource: rebuild a package and its entire dependency tree from source."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("fromsource")
except PackageNotFoundError:
    __version__ = "dev"

# Public API exports
from fromsource.api import (
    bootstrap,
    bootstrap_parallel,
    build_parallel,
    build_sequence,
    check_graph,
    stats,
    why,
)
from fromsource.codes import EdgeType, NodeStatus
from fromsource.errors import BootstrapError, CycleError, ResolutionError
from fromsource.kernel.requirements import Constraints, Requirement
from fromsource.settings import Settings

__all__ = [
    "__version__",
    "bootstrap",
    "bootstrap_parallel",
    "build_parallel",
    "build_sequence",
    "check_graph",
    "stats",
    "why",
    "EdgeType",
    "NodeStatus",
    "BootstrapError",
    "CycleError",
    "ResolutionError",
    "Constraints",
    "Requirement",
    "Settings",
]
