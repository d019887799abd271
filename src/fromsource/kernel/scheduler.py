"""Build order computation and bounded parallel execution over a finished graph.

A node may be built once its build prerequisites are built: the children it
needs at build time plus their install closure, since a build tool is only
usable once installed together with its runtime dependencies. Other install
edges (including install-time cycles) impose no order; such packages are
installed together afterwards.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from ..codes import NodeStatus
from ..errors import BootstrapError, CycleError
from .graph import DependencyGraph, DependencyNode

logger = logging.getLogger(__name__)

BuildFn = Callable[[DependencyNode], object]


def compute_waves(graph: DependencyGraph) -> List[List[str]]:
    """Kahn's algorithm over build prerequisites, grouped into waves.

    Every node in wave ``n`` only needs nodes from earlier waves at build
    time, so each wave can be built concurrently.

    Raises:
        CycleError: If the build prerequisites contain a cycle
    """
    keys = graph.package_keys()
    prerequisites = graph.build_prerequisite_map(keys)
    remaining: Dict[str, int] = {}
    dependents: Dict[str, Set[str]] = {key: set() for key in keys}
    for key in keys:
        deps = prerequisites[key]
        remaining[key] = len(deps)
        for dep in deps:
            dependents[dep].add(key)

    waves: List[List[str]] = []
    ready = sorted(k for k, n in remaining.items() if n == 0)
    placed = 0
    while ready:
        waves.append(ready)
        placed += len(ready)
        next_ready = []
        for key in ready:
            for dependent in dependents[key]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    next_ready.append(dependent)
        ready = sorted(next_ready)

    if placed != len(keys):
        cycles = graph.build_cycles()
        if cycles:
            raise CycleError(list(cycles[0].nodes), list(cycles[0].edge_types))
        stuck = sorted(k for k, n in remaining.items() if n > 0)
        raise CycleError(stuck)
    return waves


def compute_order(graph: DependencyGraph) -> List[str]:
    """Flat topological build order: each node after all its build prerequisites."""
    return [key for wave in compute_waves(graph) for key in wave]


@dataclass
class BuildReport:
    """Outcome of a parallel build."""
    statuses: Dict[str, NodeStatus]
    errors: Dict[str, BaseException] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)
    dispatch_order: List[str] = field(default_factory=list)
    completion_order: List[str] = field(default_factory=list)

    def keys_with(self, status: NodeStatus) -> List[str]:
        return sorted(k for k, s in self.statuses.items() if s == status)

    @property
    def succeeded(self) -> List[str]:
        return self.keys_with(NodeStatus.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return self.keys_with(NodeStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self.keys_with(NodeStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return all(s == NodeStatus.SUCCEEDED for s in self.statuses.values())


class ParallelBuilder:
    """Run builds over a read-only graph with a bounded worker pool.

    A node is dispatched once every build prerequisite succeeded. When a
    node fails, everything that needs it built first (transitively) is
    marked skipped instead of being attempted. :meth:`cancel` lets running
    builds finish but dispatches nothing new.
    """

    def __init__(self, graph: DependencyGraph, build_fn: BuildFn, max_workers: int = 1):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1.")
        self.graph = graph
        self.build_fn = build_fn
        self.max_workers = max_workers
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def execute(self, order: Optional[List[str]] = None) -> BuildReport:
        """Build every node; returns when all nodes are terminal."""
        order = order if order is not None else compute_order(self.graph)
        position = {key: i for i, key in enumerate(order)}
        report = BuildReport(statuses={key: NodeStatus.PENDING for key in order})
        deps = self.graph.build_prerequisite_map(order)
        waiting: Dict[str, Set[str]] = {key: set() for key in order}
        for key, prerequisites in deps.items():
            for prerequisite in prerequisites:
                waiting.setdefault(prerequisite, set()).add(key)

        def _eligible(key: str) -> bool:
            return all(report.statuses.get(d) == NodeStatus.SUCCEEDED for d in deps[key])

        running: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="build") as executor:
            while True:
                if not self.cancelled:
                    pending = sorted(
                        (k for k, s in report.statuses.items() if s == NodeStatus.PENDING),
                        key=position.__getitem__,
                    )
                    for key in pending:
                        if len(running) >= self.max_workers:
                            break
                        if _eligible(key):
                            report.statuses[key] = NodeStatus.RUNNING
                            report.dispatch_order.append(key)
                            logger.debug("dispatching %s", key)
                            running[executor.submit(self._run_one, key)] = key

                if not running:
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    key = running.pop(future)
                    elapsed, error = future.result()
                    report.durations[key] = elapsed
                    report.completion_order.append(key)
                    if error is None:
                        report.statuses[key] = NodeStatus.SUCCEEDED
                        logger.info("%s: took %.2fs to build", key, elapsed)
                    else:
                        report.statuses[key] = NodeStatus.FAILED
                        report.errors[key] = error
                        logger.error("%s: build failed: %s", key, error)
                        self._skip_dependents(key, report, waiting)

        final = NodeStatus.CANCELLED if self.cancelled else NodeStatus.SKIPPED
        for key, status in report.statuses.items():
            if status == NodeStatus.PENDING:
                report.statuses[key] = final
        return report

    def _run_one(self, key: str):
        """Worker body: never raises, returns (elapsed, error-or-None)."""
        node = self.graph.get_node(key)
        started = time.perf_counter()
        try:
            self.build_fn(node)
        except BootstrapError as e:
            return time.perf_counter() - started, e
        except Exception as e:
            logger.exception("%s: unexpected error while building", key)
            return time.perf_counter() - started, e
        return time.perf_counter() - started, None

    def _skip_dependents(self, key: str, report: BuildReport, waiting: Dict[str, Set[str]]) -> None:
        """Skip everything that needs ``key`` built first, directly or not."""
        skipped: Set[str] = set()
        stack = list(waiting.get(key, ()))
        while stack:
            current = stack.pop()
            if current in skipped:
                continue
            skipped.add(current)
            stack.extend(waiting.get(current, ()))
        for dependent in sorted(skipped):
            if report.statuses.get(dependent) == NodeStatus.PENDING:
                report.statuses[dependent] = NodeStatus.SKIPPED
                logger.warning("%s: skipped because %s failed", dependent, key)
