"""Recursive dependency-resolution-and-build driver.

For each requirement the bootstrapper resolves a version, records the node
and the edge that led to it, then (once per node) acquires and prepares the
source, bootstraps its build-system, build-backend and build-sdist
dependencies, builds it, and finally bootstraps its install dependencies.

State per run:
- ``seen``: node keys already processed (breaks recursion, and makes a
  diamond dependency build exactly once)
- ``why``: provenance stack of (edge type, requirement, version) frames
- the shared :class:`BuildContext` (settings, constraints, graph, cache,
  resolver, collaborators)
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from packaging.version import Version
from pydantic import BaseModel, ConfigDict, Field

from ..codes import EdgeType
from ..errors import (
    AcquisitionError,
    BootstrapError,
    BuildFailure,
    CycleError,
    PreparationError,
    ResolutionError,
    WhyFrame,
)
from ..settings import Settings
from .cache import SDIST, WHEEL, BuildCache
from .collaborators import BuildEnvironment, Collaborators
from .graph import ROOT_KEY, Cycle, DependencyGraph, DependencyNode, is_build_time_loop, make_key
from .requirements import Constraints, Requirement
from .resolver import SourceOptions, VersionResolver, allows_prereleases

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BuildOrderEntry(BaseModel):
    """One line of build-order.json: a package in the order it was finished."""
    req: str
    type: EdgeType
    dist: str
    version: str
    prebuilt: bool = False
    source_url: str = ""
    constraint: Optional[str] = None
    why: List[Tuple[str, str, str]] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def key(self) -> str:
        return make_key(self.dist, self.version)


@dataclass
class BuildContext:
    """Build-wide state passed explicitly to every operation."""
    settings: Settings
    resolver: VersionResolver
    collaborators: Collaborators
    cache: BuildCache = field(default_factory=BuildCache)
    constraints: Constraints = field(default_factory=Constraints)
    graph: DependencyGraph = field(default_factory=DependencyGraph)
    previous_graph: Optional[DependencyGraph] = None  # warm start

    def package_work_dir(self, name: str, version: str) -> Path:
        return self.settings.work_dir / f"{name}-{version}"


@dataclass
class BootstrapFailure:
    """A top-level requirement whose bootstrap failed."""
    requirement: str
    error: BootstrapError


@dataclass
class BootstrapResult:
    graph: DependencyGraph
    build_order: List[BuildOrderEntry]
    failures: List[BootstrapFailure] = field(default_factory=list)
    install_cycles: List[Cycle] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _step(error_cls: type, label: str, operation: Callable[[], T]) -> T:
    """Run an external step, converting unexpected exceptions into ``error_cls``."""
    try:
        return operation()
    except BootstrapError:
        raise
    except Exception as e:
        raise error_cls(f"{label} failed: {e}") from e


class PackageBuilder:
    """Acquire, prepare and build a single node whose dependencies are ready.

    Shared by the recursive bootstrapper and the parallel/sequential build
    commands; it never recurses.
    """

    def __init__(self, ctx: BuildContext):
        self.ctx = ctx

    def acquire_and_prepare(self, node: DependencyNode) -> Path:
        c = self.ctx.collaborators
        label = f"{node.canonical_name}=={node.version}"
        source_root = _step(
            AcquisitionError,
            f"acquiring {label}",
            lambda: c.acquisition.acquire(node.canonical_name, node.version, node.download_url),
        )
        return _step(PreparationError, f"preparing {label}", lambda: c.preparation.prepare(source_root))

    def build(
        self,
        node: DependencyNode,
        prepared_root: Path,
        build_requirements: Iterable[str] = (),
    ) -> Path:
        """Build the sdist and, unless in sdist-only mode, the final artifact."""
        c = self.ctx.collaborators
        settings = self.ctx.settings
        label = f"{node.canonical_name}=={node.version}"
        started = time.perf_counter()

        sdist = _step(
            BuildFailure,
            f"building sdist for {label}",
            lambda: c.builder.build_source_distribution(prepared_root),
        )
        self.ctx.cache.store_artifact(node.canonical_name, node.version, SDIST, sdist)
        if settings.sdist_only:
            logger.info("%s: took %.2fs to build sdist", label, time.perf_counter() - started)
            return sdist

        env = BuildEnvironment(
            name=node.canonical_name,
            version=node.version,
            work_dir=self.ctx.package_work_dir(node.canonical_name, node.version),
            artifacts_dir=settings.wheels_repo,
            build_requirements=tuple(sorted(build_requirements)),
        )
        artifact = _step(
            BuildFailure,
            f"building artifact for {label}",
            lambda: c.builder.build_artifact(sdist, env),
        )
        self.ctx.cache.store_artifact(node.canonical_name, node.version, WHEEL, artifact)
        logger.info("%s: took %.2fs to build", label, time.perf_counter() - started)
        return artifact

    def publish(self, artifact: Path) -> Path:
        """Copy an artifact that was not built here into the wheels repository.

        Build environments only install tools from that directory, so a
        pre-built or cached wheel has to be there before anything that
        needs it at build time is built.
        """
        repo = self.ctx.settings.wheels_repo
        dest = repo / artifact.name
        try:
            repo.mkdir(parents=True, exist_ok=True)
            if not dest.exists() or artifact.resolve() != dest.resolve():
                shutil.copy2(artifact, dest)
        except OSError as e:
            raise AcquisitionError(f"could not copy {artifact.name} into {repo}: {e}") from e
        return dest

    def fetch_cached(self, node: DependencyNode) -> Optional[Path]:
        """Published artifact from the cache, or None on a miss."""
        cached = self.ctx.cache.fetch_artifact(node.canonical_name, node.version, WHEEL)
        if cached is None:
            return None
        return self.publish(cached)

    def fetch_pre_built(self, node: DependencyNode) -> Path:
        """Return an existing artifact for a pre-built node (cache first)."""
        cached = self.fetch_cached(node)
        if cached is not None:
            return cached
        c = self.ctx.collaborators
        label = f"{node.canonical_name}=={node.version}"
        artifact = _step(
            AcquisitionError,
            f"downloading pre-built {label}",
            lambda: c.acquisition.acquire(node.canonical_name, node.version, node.download_url),
        )
        self.ctx.cache.store_artifact(node.canonical_name, node.version, WHEEL, artifact)
        return self.publish(artifact)

    def build_node(self, node: DependencyNode) -> Path:
        """Build one node of a finished graph (no recursion, cache-checked)."""
        if node.pre_built:
            return self.fetch_pre_built(node)
        if not self.ctx.settings.sdist_only:
            cached = self.fetch_cached(node)
            if cached is not None:
                return cached
        prepared = self.acquire_and_prepare(node)
        return self.build(node, prepared, self.ctx.graph.build_time_dependencies(node.key))


class Bootstrapper:
    """Depth-first bootstrap of requirements into a dependency graph."""

    def __init__(self, ctx: BuildContext):
        self.ctx = ctx
        self.builder = PackageBuilder(ctx)
        self.why: List[WhyFrame] = []
        self._stack_keys: List[str] = []
        self.seen: Set[str] = set()
        self._failed: Dict[str, BootstrapError] = {}
        self._artifacts: Dict[str, Path] = {}
        self.build_order: List[BuildOrderEntry] = []

    # -- public -----------------------------------------------------------

    def bootstrap(self, req: Requirement, edge_type: EdgeType = EdgeType.TOPLEVEL) -> Version:
        """Bootstrap ``req`` and everything it needs; return the resolved version.

        Raises:
            BootstrapError: On resolution failure, build-time cycle, or a
                failed external step anywhere in this branch
        """
        edge_type = EdgeType(edge_type)
        parent_key = self._stack_keys[-1] if self._stack_keys else ROOT_KEY
        # A direct reference to a wheel is used as-is
        pre_built = self.ctx.settings.is_pre_built(req.name) or bool(req.url and req.url.endswith(".whl"))
        url, version = self._resolve(req, pre_built)

        key = make_key(req.canonical_name, str(version))
        node = self.ctx.graph.nodes.get(key) or self.ctx.graph.add_node(DependencyNode(
            canonical_name=req.canonical_name,
            version=str(version),
            download_url=url,
            pre_built=pre_built,
            constraint=self.ctx.constraints.describe(req.name),
        ))
        self.ctx.graph.add_edge(parent_key, node.key, edge_type, str(req))

        if node.key in self._stack_keys:
            self._check_loop(node.key, edge_type)
            return version
        if node.key in self._failed:
            earlier = self._failed[node.key]
            raise BuildFailure(f"{node.key} failed earlier in this run: {earlier.detail}", self.why)
        if node.key in self.seen:
            logger.debug("%s: already bootstrapped as %s", req, version)
            return version
        self.seen.add(node.key)

        self.why.append((edge_type.value, str(req), str(version)))
        self._stack_keys.append(node.key)
        try:
            self._bootstrap_node(req, edge_type, node)
        except BootstrapError as e:
            e.with_why(self.why)
            self._failed[node.key] = e
            raise
        finally:
            self.why.pop()
            self._stack_keys.pop()
        return version

    def bootstrap_all(self, requirements: Iterable[Requirement]) -> BootstrapResult:
        """Bootstrap each top-level requirement; failures do not stop siblings
        unless ``stop_on_first_failure`` is set."""
        failures: List[BootstrapFailure] = []
        for req in requirements:
            if not req.evaluate_marker():
                logger.info("%s: skipping, marker does not match this environment", req)
                continue
            try:
                self.bootstrap(req, EdgeType.TOPLEVEL)
            except BootstrapError as e:
                logger.error("%s: bootstrap failed: %s", req, e)
                failures.append(BootstrapFailure(requirement=str(req), error=e))
                if self.ctx.settings.stop_on_first_failure:
                    break

        install_cycles = []
        # A cycle already raised during discovery shares its build parents with the detected one
        raised = [
            Cycle(tuple(f.error.cycle), tuple(f.error.edge_types)).build_parents
            for f in failures
            if isinstance(f.error, CycleError)
        ]
        for cycle in self.ctx.graph.detect_cycles():
            if cycle.is_build_time:
                if not any(cycle.build_parents & parents for parents in raised):
                    error = CycleError(list(cycle.nodes), list(cycle.edge_types))
                    logger.error("%s", error)
                    failures.append(BootstrapFailure(requirement=cycle.nodes[0], error=error))
            else:
                logger.info("install-time cycle (not blocking): %s", cycle.describe())
                install_cycles.append(cycle)

        return BootstrapResult(
            graph=self.ctx.graph,
            build_order=list(self.build_order),
            failures=failures,
            install_cycles=install_cycles,
        )

    # -- internals --------------------------------------------------------

    def _resolve(self, req: Requirement, pre_built: bool) -> Tuple[str, Version]:
        previous = self.ctx.previous_graph
        if previous is not None:
            allow_pre = allows_prereleases(req, self.ctx.constraints, self.ctx.settings.allow_prereleases)
            for prev in previous.nodes_named(req.name):
                if prev.pre_built != pre_built:
                    continue
                if Version(prev.version).is_prerelease and not allow_pre:
                    continue
                if not req.contains(prev.version, prereleases=True):
                    continue
                if not self.ctx.constraints.allows(req.name, prev.version, prereleases=True):
                    continue
                logger.info("%s: reusing %s from previous run", req, prev.version)
                return prev.download_url, Version(prev.version)

        options = SourceOptions(
            sdist_only=not pre_built,
            wheels_only=pre_built,
            allow_prereleases=self.ctx.settings.allow_prereleases,
        )
        try:
            return self.ctx.resolver.resolve(req, self.ctx.constraints, options)
        except ResolutionError as e:
            e.with_why(self.why)
            raise

    def _check_loop(self, key: str, edge_type: EdgeType) -> None:
        """``key`` is already being bootstrapped higher up the stack."""
        start = self._stack_keys.index(key)
        loop = self._stack_keys[start:]
        edge_types = [frame[0] for frame in self.why[start + 1:]] + [edge_type.value]
        if is_build_time_loop(edge_types):
            raise CycleError(loop, edge_types, why=self.why)
        logger.info("install-time cycle (not blocking): %s", " -> ".join(loop + [key]))

    def _bootstrap_node(self, req: Requirement, edge_type: EdgeType, node: DependencyNode) -> None:
        name, version = node.canonical_name, node.version
        collab = self.ctx.collaborators

        if node.pre_built:
            artifact = self.builder.fetch_pre_built(node)
            self._finish(req, edge_type, node, artifact)
            return

        if not self.ctx.settings.sdist_only:
            cached = self.builder.fetch_cached(node)
            if cached is not None:
                self._finish(req, edge_type, node, cached)
                return

        prepared = self.builder.acquire_and_prepare(node)
        label = f"{name}=={version}"

        build_system = _step(
            PreparationError,
            f"reading build-system requirements of {label}",
            lambda: collab.extractor.build_system_deps(prepared),
        )
        self._bootstrap_children(build_system, EdgeType.BUILD_SYSTEM)

        # Discovering backend dependencies may invoke the build-system tools
        build_backend = _step(
            PreparationError,
            f"reading build-backend requirements of {label}",
            lambda: collab.extractor.build_backend_deps(prepared),
        )
        self._bootstrap_children(build_backend, EdgeType.BUILD_BACKEND)

        build_sdist = _step(
            PreparationError,
            f"reading build-sdist requirements of {label}",
            lambda: collab.extractor.build_sdist_deps(prepared),
        )
        self._bootstrap_children(build_sdist, EdgeType.BUILD_SDIST)

        artifact = self.builder.build(node, prepared, self.ctx.graph.build_time_dependencies(node.key))
        self._finish(req, edge_type, node, artifact)

    def _finish(self, req: Requirement, edge_type: EdgeType, node: DependencyNode, artifact: Path) -> None:
        """Record the artifact in build order, then bootstrap install dependencies."""
        self._artifacts[node.key] = artifact
        self.build_order.append(BuildOrderEntry(
            req=str(req),
            type=edge_type,
            dist=node.canonical_name,
            version=node.version,
            prebuilt=node.pre_built,
            source_url=node.download_url,
            constraint=node.constraint,
            why=[tuple(frame) for frame in self.why[:-1]],
        ))
        install = _step(
            PreparationError,
            f"reading install requirements of {node.key}",
            lambda: self.ctx.collaborators.extractor.install_deps(artifact),
        )
        extras = req.extras
        selected = []
        for dep in install:
            if dep.evaluate_marker(extras):
                selected.append(dep)
            else:
                logger.debug("%s: ignoring %s, marker does not match", node.key, dep)
        self._bootstrap_children(selected, EdgeType.INSTALL)

    def _bootstrap_children(self, deps: Iterable[Requirement], edge_type: EdgeType) -> None:
        for dep in sorted(deps, key=str):
            self.bootstrap(dep, edge_type)

    def artifact_for(self, key: str) -> Optional[Path]:
        return self._artifacts.get(key)
