"""Edge and status code constants for fromsource.

These constants prevent stringly-typed edge kinds and build states and
ensure client code (and persisted graph.json files) use the same values.
"""

from enum import Enum


class EdgeType(str, Enum):
    """Why a child package is needed by its parent."""

    TOPLEVEL = "toplevel"
    INSTALL = "install"
    BUILD_SYSTEM = "build-system"
    BUILD_BACKEND = "build-backend"
    BUILD_SDIST = "build-sdist"

    @property
    def is_build_time(self) -> bool:
        """True when the child must exist before the parent can be compiled."""
        return self in BUILD_TIME_EDGES


BUILD_TIME_EDGES = frozenset({
    EdgeType.BUILD_SYSTEM,
    EdgeType.BUILD_BACKEND,
    EdgeType.BUILD_SDIST,
})


class NodeStatus(str, Enum):
    """Terminal and transient states of a node during a parallel build."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)
