"""Public API for fromsource.

High-level functions that wire settings, default collaborators and the
kernel together and return structured results. The CLI is a thin layer over
these functions.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

import requests
from packaging.utils import canonicalize_name
from pydantic import BaseModel, Field

from fromsource._internal.io.graph_store import (
    load_build_order,
    load_graph,
    save_build_order,
    save_constraints,
    save_graph,
)
from fromsource.adapters.builder import PipArtifactBuilder
from fromsource.adapters.metadata import PyprojectDependencyExtractor
from fromsource.adapters.source import HttpSourceAcquisition, PassthroughPreparation
from fromsource.codes import EdgeType, NodeStatus
from fromsource.errors import BootstrapError
from fromsource.kernel.bootstrap import (
    Bootstrapper,
    BootstrapResult,
    BuildContext,
    BuildOrderEntry,
    PackageBuilder,
)
from fromsource.kernel.cache import BuildCache, LocalArtifactCache, RemoteArtifactCache, ResolutionCache
from fromsource.kernel.collaborators import Collaborators
from fromsource.kernel.graph import Cycle, DependencyEdge, DependencyGraph, DependencyNode
from fromsource.kernel.requirements import Constraints, Requirement, read_requirements_file
from fromsource.kernel.resolver import ProviderRegistry, PyPIProvider, VersionResolver
from fromsource.kernel.scheduler import BuildReport, ParallelBuilder, compute_order
from fromsource.settings import Settings

logger = logging.getLogger(__name__)


def _normalize_path(path: Union[str, os.PathLike, Path]) -> Path:
    """Normalize path input to Path object."""
    return Path(path) if not isinstance(path, Path) else path


# -- wiring ---------------------------------------------------------------

def default_collaborators(settings: Settings, session: Optional[requests.Session] = None) -> Collaborators:
    """Collaborators that download from HTTP/git and build with ``pip wheel``."""
    return Collaborators(
        acquisition=HttpSourceAcquisition(
            settings.sdists_repo / "downloads",
            settings.work_dir,
            session=session,
            retry=settings.retry_policy(),
        ),
        preparation=PassthroughPreparation(),
        extractor=PyprojectDependencyExtractor(),
        builder=PipArtifactBuilder(settings.sdists_repo / "builds"),
    )


def default_resolver(
    settings: Settings,
    session: Optional[requests.Session] = None,
    resolutions: Optional[ResolutionCache] = None,
) -> VersionResolver:
    """Resolver over the configured simple index, memoizing into ``resolutions``."""
    registry = ProviderRegistry(
        PyPIProvider(settings.index_url, session=session, retry=settings.retry_policy())
    )
    return VersionResolver(registry, cache=resolutions)


def default_cache(settings: Settings, session: Optional[requests.Session] = None) -> BuildCache:
    """Local cache tier, plus the remote tier when ``cache_url`` is set."""
    tiers = [LocalArtifactCache(settings.local_cache_dir)]
    if settings.cache_url:
        tiers.append(RemoteArtifactCache(
            settings.cache_url,
            settings.work_dir / "cache-downloads",
            session=session,
            retry=settings.retry_policy(),
        ))
    return BuildCache(tiers)


def make_context(
    settings: Settings,
    *,
    constraints: Optional[Constraints] = None,
    collaborators: Optional[Collaborators] = None,
    resolver: Optional[VersionResolver] = None,
    cache: Optional[BuildCache] = None,
    graph: Optional[DependencyGraph] = None,
    previous_graph: Optional[DependencyGraph] = None,
) -> BuildContext:
    """Build a :class:`BuildContext`, filling unset parts with the defaults."""
    session = None
    if collaborators is None or resolver is None or cache is None:
        session = requests.Session()
    if cache is None:
        cache = default_cache(settings, session)
    return BuildContext(
        settings=settings,
        resolver=resolver or default_resolver(settings, session, cache.resolutions),
        collaborators=collaborators or default_collaborators(settings, session),
        cache=cache,
        constraints=constraints if constraints is not None else Constraints(),
        graph=graph if graph is not None else DependencyGraph(),
        previous_graph=previous_graph,
    )


def load_requirements(
    requirement_files: Iterable[Union[str, os.PathLike, Path]] = (),
    requirements: Iterable[str] = (),
    constraints: Optional[Constraints] = None,
) -> List[Requirement]:
    """Collect top-level requirements from files and literal strings.

    Constraint includes (``-c``) found in requirement files are added to
    ``constraints``.
    """
    reqs: List[Requirement] = []
    for path in requirement_files:
        reqs.extend(read_requirements_file(_normalize_path(path), constraints))
    reqs.extend(Requirement.parse(text) for text in requirements)
    return reqs


# -- operations -----------------------------------------------------------

def bootstrap(
    requirements: Sequence[Requirement],
    settings: Settings,
    *,
    constraints: Optional[Constraints] = None,
    collaborators: Optional[Collaborators] = None,
    resolver: Optional[VersionResolver] = None,
    cache: Optional[BuildCache] = None,
    warm_start: bool = True,
) -> BootstrapResult:
    """Bootstrap top-level requirements and everything they need.

    Writes ``graph.json``, ``build-order.json`` and ``constraints.txt`` to
    the work dir, also when some requirements failed or the run was
    interrupted, so the partial graph can be inspected and reused by a warm
    start.

    Args:
        requirements: Top-level requirements
        settings: Run settings
        constraints: Global version constraints
        collaborators: External steps (defaults to HTTP download + pip)
        resolver: Version resolver (defaults to the configured index)
        cache: Artifact caches (defaults to the local cache, plus remote)
        warm_start: Reuse versions from an existing ``graph.json``

    Returns:
        BootstrapResult with the graph, build order and any failures
    """
    previous = None
    if warm_start and settings.graph_path.exists():
        previous = load_graph(settings.graph_path)
        logger.info("loaded previous graph with %d packages from %s", len(previous), settings.graph_path)

    ctx = make_context(
        settings,
        constraints=constraints,
        collaborators=collaborators,
        resolver=resolver,
        cache=cache,
        previous_graph=previous,
    )
    settings.work_dir.mkdir(parents=True, exist_ok=True)
    started = time.perf_counter()
    bootstrapper = Bootstrapper(ctx)
    try:
        result = bootstrapper.bootstrap_all(requirements)
    finally:
        save_graph(ctx.graph, settings.graph_path)
        save_build_order(bootstrapper.build_order, settings.build_order_path)
        save_constraints(ctx.graph, settings.constraints_path)
    logger.info(
        "bootstrapped %d packages in %.2fs (%d failures)",
        len(result.graph), time.perf_counter() - started, len(result.failures),
    )
    return result


@dataclass
class ParallelRun:
    """Result of discovery followed by a parallel build."""
    discovery: BootstrapResult
    report: Optional[BuildReport] = None

    @property
    def ok(self) -> bool:
        return self.discovery.ok and self.report is not None and self.report.ok


def bootstrap_parallel(
    requirements: Sequence[Requirement],
    settings: Settings,
    *,
    constraints: Optional[Constraints] = None,
    collaborators: Optional[Collaborators] = None,
    resolver: Optional[VersionResolver] = None,
    cache: Optional[BuildCache] = None,
    max_workers: Optional[int] = None,
) -> ParallelRun:
    """Discover the graph building sdists only, then build artifacts in parallel.

    The parallel phase is skipped when discovery failed.
    """
    discovery_settings = settings.model_copy(update={"sdist_only": True})
    discovery = bootstrap(
        requirements,
        discovery_settings,
        constraints=constraints,
        collaborators=collaborators,
        resolver=resolver,
        cache=cache,
    )
    if not discovery.ok:
        logger.error("discovery failed; not starting the parallel build")
        return ParallelRun(discovery=discovery)

    report = build_parallel(
        discovery.graph,
        settings.model_copy(update={"sdist_only": False}),
        collaborators=collaborators,
        cache=cache,
        max_workers=max_workers,
    )
    return ParallelRun(discovery=discovery, report=report)


def build_parallel(
    graph: Union[DependencyGraph, str, os.PathLike, Path],
    settings: Settings,
    *,
    collaborators: Optional[Collaborators] = None,
    cache: Optional[BuildCache] = None,
    max_workers: Optional[int] = None,
) -> BuildReport:
    """Build every node of a finished graph with a bounded worker pool."""
    if not isinstance(graph, DependencyGraph):
        graph = load_graph(_normalize_path(graph))
    ctx = make_context(settings, collaborators=collaborators, cache=cache, graph=graph)
    workers = max_workers or settings.max_workers
    logger.info("building %d packages with %d workers", len(graph), workers)
    report = ParallelBuilder(graph, PackageBuilder(ctx).build_node, max_workers=workers).execute(
        compute_order(graph)
    )
    if not report.ok:
        logger.error(
            "parallel build finished with %d failed and %d skipped packages",
            len(report.failed), len(report.skipped),
        )
    return report


def build_sequence(
    build_order: Union[Sequence[BuildOrderEntry], str, os.PathLike, Path],
    settings: Settings,
    *,
    collaborators: Optional[Collaborators] = None,
    cache: Optional[BuildCache] = None,
) -> BuildReport:
    """Build packages one at a time in the order of a ``build-order.json``.

    Entries are built as recorded, without resolving anything again. After
    a failure the remaining entries are still attempted unless
    ``stop_on_first_failure`` is set, in which case they are skipped.
    """
    if not isinstance(build_order, (list, tuple)):
        build_order = load_build_order(_normalize_path(build_order))
    ctx = make_context(settings, collaborators=collaborators, cache=cache)
    builder = PackageBuilder(ctx)
    report = BuildReport(statuses={})
    stop = False
    for entry in build_order:
        key = entry.key
        if key in report.statuses:
            continue
        if stop:
            report.statuses[key] = NodeStatus.SKIPPED
            continue
        node = ctx.graph.nodes.get(key) or ctx.graph.add_node(DependencyNode(
            canonical_name=entry.dist,
            version=entry.version,
            download_url=entry.source_url,
            pre_built=entry.prebuilt,
            constraint=entry.constraint,
        ))
        report.dispatch_order.append(key)
        started = time.perf_counter()
        try:
            builder.build_node(node)
        except BootstrapError as e:
            report.statuses[key] = NodeStatus.FAILED
            report.errors[key] = e
            logger.error("%s: build failed: %s", key, e)
            stop = settings.stop_on_first_failure
        else:
            report.statuses[key] = NodeStatus.SUCCEEDED
        report.durations[key] = time.perf_counter() - started
        report.completion_order.append(key)
    return report


class BuildStats(BaseModel):
    """Summary of a build order."""
    total: int
    built: int
    prebuilt: int
    by_type: Dict[str, int] = Field(default_factory=dict)
    toplevel: List[str] = Field(default_factory=list)
    missing_requirements: List[str] = Field(default_factory=list)


def stats(
    build_order: Union[Sequence[BuildOrderEntry], str, os.PathLike, Path],
    requirements: Optional[Sequence[Requirement]] = None,
) -> BuildStats:
    """Count packages in a build order by type.

    When ``requirements`` is given, also reports top-level requirements that
    do not appear in the build order (for example because they failed).
    """
    if not isinstance(build_order, (list, tuple)):
        build_order = load_build_order(_normalize_path(build_order))

    by_type: Dict[str, int] = {}
    names = set()
    toplevel = set()
    prebuilt = 0
    for entry in build_order:
        by_type[entry.type.value] = by_type.get(entry.type.value, 0) + 1
        names.add(canonicalize_name(entry.dist))
        if entry.type == EdgeType.TOPLEVEL:
            toplevel.add(entry.key)
        if entry.prebuilt:
            prebuilt += 1

    missing = []
    for req in requirements or ():
        if req.evaluate_marker() and req.canonical_name not in names:
            missing.append(str(req))

    return BuildStats(
        total=len(build_order),
        built=len(build_order) - prebuilt,
        prebuilt=prebuilt,
        by_type=dict(sorted(by_type.items())),
        toplevel=sorted(toplevel),
        missing_requirements=sorted(missing),
    )


def why(
    graph: Union[DependencyGraph, str, os.PathLike, Path],
    name: str,
) -> Dict[str, List[DependencyEdge]]:
    """Explain why a package is in the graph.

    Returns:
        Map of node key (one per version of ``name``) to the shortest chain
        of edges from the top level to that node

    Raises:
        KeyError: If no version of ``name`` is in the graph
    """
    if not isinstance(graph, DependencyGraph):
        graph = load_graph(_normalize_path(graph))
    nodes = graph.nodes_named(name)
    if not nodes:
        raise KeyError(f"{canonicalize_name(name)} is not in the dependency graph")
    return {node.key: graph.why(node.key) for node in nodes}


@dataclass
class GraphCheck:
    """Cycle report for a dependency graph."""
    packages: int
    edges: int
    build_cycles: List[Cycle] = field(default_factory=list)
    install_cycles: List[Cycle] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.build_cycles


def check_graph(graph: Union[DependencyGraph, str, os.PathLike, Path]) -> GraphCheck:
    """Detect and classify cycles in a graph."""
    if not isinstance(graph, DependencyGraph):
        graph = load_graph(_normalize_path(graph))
    cycles = graph.detect_cycles()
    return GraphCheck(
        packages=len(graph),
        edges=len(graph.edges),
        build_cycles=[c for c in cycles if c.is_build_time],
        install_cycles=[c for c in cycles if not c.is_build_time],
    )
