"""Narrow interfaces to the collaborators the bootstrapper drives.

Source acquisition, preparation, dependency extraction and artifact building
are external steps. The kernel only depends on these protocols; default
implementations live in ``fromsource.adapters``.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Set, Tuple, runtime_checkable

from .requirements import Requirement


@dataclass(frozen=True)
class BuildEnvironment:
    """What an artifact build may rely on.

    ``build_requirements`` are the keys of every build-time dependency that
    has already been bootstrapped; ``artifacts_dir`` is where they (and the
    new artifact) live. ``work_dir`` is private to this build.
    """
    name: str
    version: str
    work_dir: Path
    artifacts_dir: Path
    build_requirements: Tuple[str, ...] = field(default_factory=tuple)


@runtime_checkable
class SourceAcquisition(Protocol):
    def acquire(self, name: str, version: str, source_url: str) -> Path:
        """Download and unpack a source; raises AcquisitionError."""
        ...


@runtime_checkable
class SourcePreparation(Protocol):
    def prepare(self, source_root: Path) -> Path:
        """Apply patches / vendoring; raises PreparationError."""
        ...


@runtime_checkable
class DependencyExtractor(Protocol):
    def build_system_deps(self, prepared_root: Path) -> Set[Requirement]: ...

    def build_backend_deps(self, prepared_root: Path) -> Set[Requirement]: ...

    def build_sdist_deps(self, prepared_root: Path) -> Set[Requirement]: ...

    def install_deps(self, artifact: Path) -> Set[Requirement]: ...


@runtime_checkable
class ArtifactBuilder(Protocol):
    def build_source_distribution(self, prepared_root: Path) -> Path:
        """Raises BuildFailure."""
        ...

    def build_artifact(self, sdist_path: Path, build_env: BuildEnvironment) -> Path:
        """Raises BuildFailure."""
        ...


@dataclass
class Collaborators:
    """The set of external steps used by one bootstrap run."""
    acquisition: SourceAcquisition
    preparation: SourcePreparation
    extractor: DependencyExtractor
    builder: ArtifactBuilder
