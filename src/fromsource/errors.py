"""Error taxonomy for fromsource.

Every error raised while bootstrapping carries the provenance chain ("why")
that led to the failing package, so a user can trace why it was being built.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

# (edge type value, requirement string, resolved version)
WhyFrame = Tuple[str, str, str]


def format_why(why: Sequence[WhyFrame]) -> str:
    """Render a provenance chain as a single "required by" line."""
    if not why:
        return "(top level)"
    parts = [f"{edge_type} dependency {req} ({version})" for edge_type, req, version in why]
    return " -> ".join(parts)


class BootstrapError(Exception):
    """Base exception for failures while bootstrapping a package."""

    retryable = False

    def __init__(self, message: str, why: Optional[Iterable[WhyFrame]] = None):
        self.why: List[WhyFrame] = list(why or [])
        self.detail = message
        super().__init__(message)

    def with_why(self, why: Iterable[WhyFrame]) -> "BootstrapError":
        """Attach a provenance chain if the error does not carry one yet."""
        if not self.why:
            self.why = list(why)
        return self

    def __str__(self) -> str:
        if not self.why:
            return self.detail
        return f"{self.detail}\n  Required by: {format_why(self.why)}"


class ResolutionError(BootstrapError):
    """Raised when no candidate satisfies a requirement and the constraints."""

    def __init__(self, requirement: str, reason: str, why: Optional[Iterable[WhyFrame]] = None):
        self.requirement = requirement
        self.reason = reason
        super().__init__(f"Could not resolve {requirement}: {reason}", why)


class CycleError(BootstrapError):
    """Raised when packages need each other built before they can be built themselves."""

    def __init__(
        self,
        cycle: List[str],
        edge_types: Optional[List[str]] = None,
        why: Optional[Iterable[WhyFrame]] = None,
    ):
        # Drop the duplicated closing node if present
        if len(cycle) > 1 and cycle[0] == cycle[-1]:
            cycle = cycle[:-1]
        self.cycle = cycle
        self.edge_types = edge_types or []
        cycle_str = " -> ".join(cycle + cycle[:1])
        msg = f"Build-time cycle detected in dependency graph:\n  Cycle: {cycle_str}"
        if self.edge_types:
            msg += f"\n  Edge types: {', '.join(self.edge_types)}"
        super().__init__(msg, why)


class AcquisitionError(BootstrapError):
    """Raised when the source for a package cannot be downloaded or unpacked."""


class PreparationError(BootstrapError):
    """Raised when an acquired source tree cannot be prepared for building."""


class BuildFailure(BootstrapError):
    """Raised when building a source distribution or artifact fails."""


class CacheError(BootstrapError):
    """Raised by artifact caches; callers treat it as a cache miss."""


class GraphInvariantError(BootstrapError):
    """Raised when a graph mutation would break a structural invariant."""
