"""Typed dependency graph of resolved package versions.

The graph is a dumb, append-only structure: nodes are frozen value objects
keyed by ``name==version`` and edges are frozen typed relations. Policy about
what to add and how to interpret cycles lives in the bootstrapper.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from packaging.utils import canonicalize_name
from packaging.version import Version
from pydantic import BaseModel, ConfigDict, ValidationError

from ..codes import BUILD_TIME_EDGES, EdgeType
from ..errors import GraphInvariantError

ROOT_KEY = ""


def make_key(name: str, version: str) -> str:
    """Build the identity key for a (name, version) pair."""
    return f"{canonicalize_name(name)}=={version}"


def is_build_time_loop(edge_types: Iterable[EdgeType | str]) -> bool:
    """Classify a simple loop by the types of its edges.

    A loop is fatal when every edge is build-time, or when it holds two or
    more build-time edges: each of those parents then needs the other's
    build tool installed, runtime dependencies included, before it can be
    compiled. A loop closed by a single build-time edge is install-time.
    """
    types = [EdgeType(t) for t in edge_types]
    build_edges = sum(1 for t in types if t in BUILD_TIME_EDGES)
    return build_edges >= 2 or (bool(types) and build_edges == len(types))


class DependencyNode(BaseModel):
    """One resolved (name, version) pairing.

    Frozen: "changing" a node means adding a different node.
    """
    canonical_name: str
    version: str
    download_url: str = ""
    pre_built: bool = False
    constraint: Optional[str] = None  # constraint that pinned this version, if any

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def root(cls) -> "DependencyNode":
        return cls(canonical_name="", version="")

    @property
    def is_root(self) -> bool:
        return self.canonical_name == ""

    @property
    def key(self) -> str:
        if self.is_root:
            return ROOT_KEY
        return make_key(self.canonical_name, self.version)


class DependencyEdge(BaseModel):
    """A typed relation from a parent node (or ROOT) to a child node."""
    parent_key: str
    child_key: str
    edge_type: EdgeType
    requirement: str  # requirement text that produced the edge (provenance)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def is_build_time(self) -> bool:
        return self.edge_type in BUILD_TIME_EDGES


@dataclass(frozen=True)
class Cycle:
    """A loop in the edge relation.

    ``nodes`` lists the keys along the loop without repeating the first key;
    ``edge_types[i]`` is the type of the edge from ``nodes[i]`` to the next node.
    """
    nodes: Tuple[str, ...]
    edge_types: Tuple[str, ...]

    @property
    def is_build_time(self) -> bool:
        """True for a fatal loop, see :func:`is_build_time_loop`."""
        return is_build_time_loop(self.edge_types)

    @property
    def build_parents(self) -> frozenset:
        """Keys along the loop whose outgoing loop edge is build-time."""
        return frozenset(
            key for key, t in zip(self.nodes, self.edge_types) if EdgeType(t) in BUILD_TIME_EDGES
        )

    @property
    def kind(self) -> str:
        return "build" if self.is_build_time else "install"

    def describe(self) -> str:
        parts = []
        for i, key in enumerate(self.nodes):
            parts.append(f"{key} -[{self.edge_types[i]}]->")
        return " ".join(parts) + f" {self.nodes[0]}"


class DependencyGraph:
    """Dependency graph of every package version seen during a run.

    Mutations are guarded by a lock so a graph can be shared between the
    discovery thread and observers; reads of a finished graph need no lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.nodes: Dict[str, DependencyNode] = {ROOT_KEY: DependencyNode.root()}
        self._edges: Dict[str, List[DependencyEdge]] = defaultdict(list)  # parent -> outgoing
        self._reverse_edges: Dict[str, List[DependencyEdge]] = defaultdict(list)  # child -> incoming
        self._edge_set: Set[DependencyEdge] = set()

    # -- mutation ---------------------------------------------------------

    def add_node(self, node: DependencyNode) -> DependencyNode:
        """Insert ``node`` unless its key already exists; return the stored node.

        Raises:
            GraphInvariantError: If a different node with the same key exists
        """
        with self._lock:
            existing = self.nodes.get(node.key)
            if existing is None:
                self.nodes[node.key] = node
                return node
            if existing != node:
                raise GraphInvariantError(
                    f"Node {node.key} already exists with different attributes"
                )
            return existing

    def add_edge(
        self,
        parent_key: str,
        child_key: str,
        edge_type: EdgeType | str,
        requirement: str,
    ) -> DependencyEdge:
        """Add a typed edge between two existing nodes.

        Raises:
            GraphInvariantError: If either endpoint is missing
        """
        edge = DependencyEdge(
            parent_key=parent_key,
            child_key=child_key,
            edge_type=EdgeType(edge_type),
            requirement=str(requirement),
        )
        with self._lock:
            missing = [k for k in (parent_key, child_key) if k not in self.nodes]
            if missing:
                raise GraphInvariantError(
                    f"Edge {parent_key or '<root>'} -> {child_key} references missing node(s): "
                    + ", ".join(k or "<root>" for k in missing)
                )
            if edge in self._edge_set:
                return edge
            self._edge_set.add(edge)
            self._edges[parent_key].append(edge)
            self._reverse_edges[child_key].append(edge)
        return edge

    # -- queries ----------------------------------------------------------

    def __contains__(self, key: str) -> bool:
        return key in self.nodes

    def __len__(self) -> int:
        """Number of package nodes (ROOT excluded)."""
        return len(self.nodes) - 1

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DependencyGraph):
            return NotImplemented
        return self.nodes == other.nodes and self._edge_set == other._edge_set

    def get_node(self, key: str) -> DependencyNode:
        try:
            return self.nodes[key]
        except KeyError:
            raise KeyError(f"No node {key!r} in dependency graph") from None

    def package_keys(self) -> List[str]:
        """Sorted keys of every package node (ROOT excluded)."""
        return sorted(k for k in self.nodes if k != ROOT_KEY)

    def nodes_named(self, name: str) -> List[DependencyNode]:
        """All nodes for a package name, highest version first."""
        canonical = canonicalize_name(name)
        found = [n for n in self.nodes.values() if n.canonical_name == canonical and not n.is_root]
        return sorted(found, key=lambda n: Version(n.version), reverse=True)

    @property
    def edges(self) -> List[DependencyEdge]:
        """All edges in deterministic order."""
        return sorted(self._edge_set, key=_edge_sort_key)

    def dependencies_of(
        self,
        key: str,
        edge_types: Optional[Iterable[EdgeType | str]] = None,
    ) -> Iterator[DependencyEdge]:
        """Lazily yield outgoing edges of ``key`` whose type is in ``edge_types``."""
        wanted = None if edge_types is None else {EdgeType(t) for t in edge_types}
        for edge in self._edges.get(key, ()):
            if wanted is None or edge.edge_type in wanted:
                yield edge

    def dependents_of(self, key: str) -> List[DependencyEdge]:
        """Incoming edges of ``key`` (reverse traversal)."""
        return list(self._reverse_edges.get(key, ()))

    def build_time_dependencies(self, key: str) -> Set[str]:
        """Keys of children needed to compile ``key``."""
        return {e.child_key for e in self.dependencies_of(key, BUILD_TIME_EDGES)}

    def install_dependencies(self, key: str) -> Set[str]:
        return {e.child_key for e in self.dependencies_of(key, [EdgeType.INSTALL])}

    def build_prerequisites(self, key: str) -> Set[str]:
        """Keys that must be built before ``key`` can be built."""
        return self.build_prerequisite_map([key])[key]

    def build_prerequisite_map(self, keys: Optional[Iterable[str]] = None) -> Dict[str, Set[str]]:
        """Map each key to the nodes that must be built before it.

        A build tool is only usable once it is installed, so the
        prerequisites of a node are its build-time children plus everything
        those children pull in through install edges. The node itself is
        left out of its tools' install closure: a tool that depends on the
        package it builds at runtime is an install-time cycle.
        """
        keys = self.package_keys() if keys is None else list(keys)
        closures: Dict[str, Set[str]] = {}
        result: Dict[str, Set[str]] = {}
        for key in keys:
            prerequisites: Set[str] = set()
            for child in self.build_time_dependencies(key):
                prerequisites.add(child)
                if child not in closures:
                    closures[child] = self.get_transitive_dependencies(child, [EdgeType.INSTALL])
                prerequisites.update(closures[child] - {key})
            prerequisites.discard(ROOT_KEY)
            result[key] = prerequisites
        return result

    def get_transitive_dependencies(
        self,
        key: str,
        edge_types: Optional[Iterable[EdgeType | str]] = None,
    ) -> Set[str]:
        """Get all transitive dependencies (iterative)."""
        edge_types = None if edge_types is None else list(edge_types)
        visited: Set[str] = set()
        stack = [key]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            for edge in self.dependencies_of(current, edge_types):
                if edge.child_key not in visited:
                    stack.append(edge.child_key)
        visited.discard(key)
        return visited

    def get_transitive_dependents(self, key: str) -> Set[str]:
        """Get everything that depends on ``key``, recursively (ROOT excluded)."""
        visited: Set[str] = set()
        stack = [key]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            for edge in self.dependents_of(current):
                if edge.parent_key not in visited:
                    stack.append(edge.parent_key)
        visited.discard(key)
        visited.discard(ROOT_KEY)
        return visited

    def why(self, key: str) -> List[DependencyEdge]:
        """Shortest chain of edges from ROOT to ``key`` ("why is this built").

        Returns an empty list when ``key`` is unreachable from ROOT.
        """
        if key not in self.nodes:
            raise KeyError(f"No node {key!r} in dependency graph")
        if key == ROOT_KEY:
            return []
        # BFS backwards from key until ROOT is reached
        queue = deque([key])
        via: Dict[str, DependencyEdge] = {}
        seen = {key}
        while queue:
            current = queue.popleft()
            for edge in sorted(self.dependents_of(current), key=_edge_sort_key):
                parent = edge.parent_key
                if parent in seen:
                    continue
                seen.add(parent)
                via[parent] = edge
                if parent == ROOT_KEY:
                    chain = []
                    step = ROOT_KEY
                    while step != key:
                        edge_step = via[step]
                        chain.append(edge_step)
                        step = edge_step.child_key
                    return chain
                queue.append(parent)
        return []

    # -- cycles -----------------------------------------------------------

    def strongly_connected_components(
        self,
        edge_types: Optional[Iterable[EdgeType | str]] = None,
    ) -> List[List[str]]:
        """Tarjan's algorithm over edges of ``edge_types``.

        Returns components (sorted keys) in reverse topological order: a
        component appears before every component that depends on it.
        """
        edge_types = None if edge_types is None else list(edge_types)
        return _tarjan(sorted(self.nodes), lambda key: self._child_keys(key, edge_types))

    def detect_cycles(self) -> List[Cycle]:
        """Find cycles and classify each as install-time or build-time.

        Build-time cycles are loops in the build prerequisite relation (see
        :meth:`build_prerequisite_map`): no member can be compiled before
        another member is built and installed. Each is reported as a
        concrete loop of graph edges. Any other loop (install-only, or
        closed by a single build-time edge) is an install-time cycle: its
        members can be built in prerequisite order and installed together
        afterwards.

        One cycle is reported per strongly connected component.
        """
        cycles: List[Cycle] = []
        in_build_cycle: Set[str] = set()
        prerequisites = self.build_prerequisite_map()
        for component in _tarjan(sorted(prerequisites), lambda key: sorted(prerequisites[key])):
            cycle = self._prerequisite_cycle(component, prerequisites)
            if cycle is not None:
                cycles.append(cycle)
                in_build_cycle.update(cycle.nodes)
        for component in self.strongly_connected_components():
            if in_build_cycle.intersection(component):
                continue
            cycle = self._component_cycle(component)
            if cycle is not None:
                cycles.append(cycle)
        return cycles

    def build_cycles(self) -> List[Cycle]:
        return [c for c in self.detect_cycles() if c.is_build_time]

    def install_cycles(self) -> List[Cycle]:
        return [c for c in self.detect_cycles() if not c.is_build_time]

    def _child_keys(self, key: str, edge_types: Optional[List[Any]]) -> List[str]:
        return sorted({e.child_key for e in self.dependencies_of(key, edge_types)})

    def _component_cycle(self, component: List[str]) -> Optional[Cycle]:
        """A concrete loop inside a strongly connected component, or None."""
        members = set(component)
        internal = sorted(
            (e for key in component for e in self.dependencies_of(key) if e.child_key in members),
            key=_edge_sort_key,
        )
        if not internal:
            return None
        # Every edge inside a component lies on some loop
        start_edge = internal[0]
        path = self._shortest_path(start_edge.child_key, start_edge.parent_key, members)
        if path is None:
            raise GraphInvariantError(f"No loop through {start_edge.parent_key} inside its component")
        return _loop([start_edge] + path)

    def _prerequisite_cycle(
        self,
        component: List[str],
        prerequisites: Dict[str, Set[str]],
    ) -> Optional[Cycle]:
        """Expand a loop of the prerequisite relation into graph edges."""
        members = set(component)
        start = component[0]
        following = sorted(prerequisites[start] & members)
        if not following:
            return None
        ring = [start] + _key_path(following[0], start, members, prerequisites)[:-1]
        edges: List[DependencyEdge] = []
        for i, key in enumerate(ring):
            edges.extend(self._prerequisite_edges(key, ring[(i + 1) % len(ring)]))
        return _loop(edges)

    def _prerequisite_edges(self, key: str, prerequisite: str) -> List[DependencyEdge]:
        """Edges showing why ``prerequisite`` must be built before ``key``."""
        build_edges = sorted(self.dependencies_of(key, BUILD_TIME_EDGES), key=_edge_sort_key)
        for edge in build_edges:
            if edge.child_key == prerequisite:
                return [edge]
        for edge in build_edges:
            path = self._shortest_path(edge.child_key, prerequisite, None, [EdgeType.INSTALL])
            if path is not None:
                return [edge] + path
        raise GraphInvariantError(f"{prerequisite} is not a build prerequisite of {key}")

    def _shortest_path(
        self,
        from_key: str,
        to_key: str,
        within: Optional[Set[str]] = None,
        edge_types: Optional[Iterable[Any]] = None,
    ) -> Optional[List[DependencyEdge]]:
        """Edges of a shortest path from ``from_key`` to ``to_key``, or None."""
        if from_key == to_key:
            return []
        edge_types = None if edge_types is None else list(edge_types)
        queue = deque([from_key])
        via: Dict[str, DependencyEdge] = {}
        seen = {from_key}
        while queue:
            current = queue.popleft()
            for edge in sorted(self.dependencies_of(current, edge_types), key=_edge_sort_key):
                child = edge.child_key
                if (within is not None and child not in within) or child in seen:
                    continue
                seen.add(child)
                via[child] = edge
                if child == to_key:
                    path = []
                    step = to_key
                    while step != from_key:
                        path.append(via[step])
                        step = via[step].parent_key
                    return list(reversed(path))
                queue.append(child)
        return None

    # -- persistence ------------------------------------------------------

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Serialize to a mapping of node key -> attributes + outgoing edges."""
        data: Dict[str, Dict[str, Any]] = {}
        for key in sorted(self.nodes):
            node = self.nodes[key]
            entry = node.model_dump()
            entry["edges"] = [
                {"key": e.child_key, "req_type": e.edge_type.value, "req": e.requirement}
                for e in sorted(self._edges.get(key, ()), key=_edge_sort_key)
            ]
            data[key] = entry
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> "DependencyGraph":
        """Rebuild a graph from :meth:`to_dict` output.

        Raises:
            GraphInvariantError: If the data is malformed or has dangling edges
        """
        graph = cls()
        pending_edges: List[Tuple[str, Dict[str, Any]]] = []
        for key, entry in data.items():
            if not isinstance(entry, dict):
                raise GraphInvariantError(f"Graph entry for {key!r} must be an object")
            attrs = {k: v for k, v in entry.items() if k != "edges"}
            try:
                node = DependencyNode(**attrs)
            except ValidationError as e:
                raise GraphInvariantError(f"Invalid node {key!r}: {e}") from e
            if node.key != key:
                raise GraphInvariantError(f"Node key mismatch: {key!r} holds {node.key!r}")
            graph.add_node(node)
            for edge in entry.get("edges", []):
                pending_edges.append((key, edge))
        for parent_key, edge in pending_edges:
            try:
                graph.add_edge(parent_key, edge["key"], edge["req_type"], edge["req"])
            except (KeyError, ValueError) as e:
                raise GraphInvariantError(f"Invalid edge from {parent_key!r}: {e}") from e
        return graph


def _edge_sort_key(edge: DependencyEdge) -> Tuple[str, str, str, str]:
    return (edge.parent_key, edge.child_key, edge.edge_type.value, edge.requirement)


def _loop(edges: List[DependencyEdge]) -> Cycle:
    return Cycle(
        nodes=tuple(e.parent_key for e in edges),
        edge_types=tuple(e.edge_type.value for e in edges),
    )


def _key_path(
    from_key: str,
    to_key: str,
    within: Set[str],
    successors: Dict[str, Set[str]],
) -> List[str]:
    """Keys of a shortest path ``from_key`` .. ``to_key`` (inclusive) inside ``within``."""
    queue = deque([from_key])
    parent: Dict[str, Optional[str]] = {from_key: None}
    while queue:
        current = queue.popleft()
        if current == to_key:
            path = [current]
            while parent[path[-1]] is not None:
                path.append(parent[path[-1]])
            return list(reversed(path))
        for child in sorted(successors.get(current, ())):
            if child in within and child not in parent:
                parent[child] = current
                queue.append(child)
    raise GraphInvariantError(f"No path from {from_key} to {to_key} inside component")


def _tarjan(keys: List[str], children: Callable[[str], List[str]]) -> List[List[str]]:
    """Tarjan's algorithm, iterative so deep graphs do not exhaust the stack."""
    index_of: Dict[str, int] = {}
    low: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = 0

    for start in keys:
        if start in index_of:
            continue
        index_of[start] = low[start] = counter
        counter += 1
        stack.append(start)
        on_stack.add(start)
        work = [(start, iter(children(start)))]
        while work:
            node, pending = work[-1]
            advanced = False
            for child in pending:
                if child not in index_of:
                    index_of[child] = low[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(children(child))))
                    advanced = True
                    break
                if child in on_stack:
                    low[node] = min(low[node], index_of[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))
    return components
