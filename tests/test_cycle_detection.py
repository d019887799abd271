"""Tests for cycle detection and build-time / install-time classification."""

import pytest

from fromsource.codes import EdgeType
from fromsource.errors import CycleError
from fromsource.kernel.graph import DependencyGraph, DependencyNode, is_build_time_loop


def _graph(*edges):
    graph = DependencyGraph()
    for parent, child, _ in edges:
        for name in (parent, child):
            graph.add_node(DependencyNode(canonical_name=name, version="1.0"))
    for parent, child, edge_type in edges:
        graph.add_edge(f"{parent}==1.0", f"{child}==1.0", edge_type, child)
    return graph


def test_acyclic_graph_has_no_cycles():
    graph = _graph(("a", "b", EdgeType.BUILD_SYSTEM), ("b", "c", EdgeType.INSTALL))
    assert graph.detect_cycles() == []


def test_install_only_cycle_is_install_time():
    graph = _graph(("a", "b", EdgeType.INSTALL), ("b", "a", EdgeType.INSTALL))
    cycles = graph.detect_cycles()
    assert len(cycles) == 1
    assert not cycles[0].is_build_time
    assert cycles[0].kind == "install"
    assert set(cycles[0].nodes) == {"a==1.0", "b==1.0"}


def test_build_system_then_install_back_edge_is_install_time():
    graph = _graph(("a", "b", EdgeType.BUILD_SYSTEM), ("b", "a", EdgeType.INSTALL))
    cycles = graph.detect_cycles()
    assert len(cycles) == 1
    assert not cycles[0].is_build_time
    assert graph.build_cycles() == []
    assert len(graph.install_cycles()) == 1


def test_build_system_both_ways_is_build_time():
    graph = _graph(("a", "b", EdgeType.BUILD_SYSTEM), ("b", "a", EdgeType.BUILD_SYSTEM))
    cycles = graph.build_cycles()
    assert len(cycles) == 1
    cycle = cycles[0]
    assert cycle.is_build_time
    assert cycle.nodes == ("a==1.0", "b==1.0")
    assert cycle.edge_types == ("build-system", "build-system")
    assert cycle.describe() == "a==1.0 -[build-system]-> b==1.0 -[build-system]-> a==1.0"


def test_mixed_build_edge_types_are_build_time():
    graph = _graph(
        ("a", "b", EdgeType.BUILD_BACKEND),
        ("b", "c", EdgeType.BUILD_SDIST),
        ("c", "a", EdgeType.BUILD_SYSTEM),
    )
    cycles = graph.detect_cycles()
    assert len(cycles) == 1
    assert cycles[0].is_build_time
    assert len(cycles[0].nodes) == 3


def test_self_loop_is_a_cycle():
    graph = _graph(("a", "a", EdgeType.BUILD_SYSTEM))
    cycles = graph.detect_cycles()
    assert len(cycles) == 1
    assert cycles[0].nodes == ("a==1.0",)
    assert cycles[0].is_build_time


def test_build_cycle_inside_larger_install_component_is_reported_once():
    graph = _graph(
        ("a", "b", EdgeType.BUILD_SYSTEM),
        ("b", "a", EdgeType.BUILD_SYSTEM),
        ("b", "c", EdgeType.INSTALL),
        ("c", "a", EdgeType.INSTALL),
    )
    cycles = graph.detect_cycles()
    assert [c.kind for c in cycles] == ["build"]


def test_separate_components_are_reported_separately():
    graph = _graph(
        ("a", "b", EdgeType.INSTALL),
        ("b", "a", EdgeType.INSTALL),
        ("x", "y", EdgeType.BUILD_SYSTEM),
        ("y", "x", EdgeType.BUILD_BACKEND),
    )
    kinds = sorted(c.kind for c in graph.detect_cycles())
    assert kinds == ["build", "install"]


def test_deep_chain_does_not_hit_recursion_limit():
    graph = DependencyGraph()
    count = 3000
    for i in range(count):
        graph.add_node(DependencyNode(canonical_name=f"p{i}", version="1.0"))
    for i in range(count - 1):
        graph.add_edge(f"p{i}==1.0", f"p{i + 1}==1.0", EdgeType.INSTALL, f"p{i + 1}")
    graph.add_edge(f"p{count - 1}==1.0", "p0==1.0", EdgeType.INSTALL, "p0")
    cycles = graph.detect_cycles()
    assert len(cycles) == 1
    assert len(cycles[0].nodes) == count


def test_build_cycle_through_a_tools_runtime_dependency():
    graph = _graph(
        ("a", "b", EdgeType.BUILD_SYSTEM),
        ("b", "c", EdgeType.INSTALL),
        ("c", "a", EdgeType.BUILD_SYSTEM),
    )
    assert graph.build_prerequisites("a==1.0") == {"b==1.0", "c==1.0"}
    assert graph.build_prerequisites("c==1.0") == {"a==1.0"}
    cycles = graph.detect_cycles()
    assert len(cycles) == 1
    cycle = cycles[0]
    assert cycle.is_build_time
    assert cycle.nodes == ("a==1.0", "b==1.0", "c==1.0")
    assert cycle.edge_types == ("build-system", "install", "build-system")
    assert cycle.build_parents == {"a==1.0", "c==1.0"}


def test_loop_closed_by_one_build_edge_is_install_time():
    graph = _graph(
        ("a", "b", EdgeType.BUILD_SYSTEM),
        ("b", "c", EdgeType.INSTALL),
        ("c", "a", EdgeType.INSTALL),
    )
    assert graph.build_prerequisites("a==1.0") == {"b==1.0", "c==1.0"}
    assert [c.kind for c in graph.detect_cycles()] == ["install"]


@pytest.mark.parametrize(
    "edge_types, expected",
    [
        (["install", "install"], False),
        (["build-system", "install"], False),
        (["build-backend", "install", "install"], False),
        (["build-system", "install", "build-sdist"], True),
        (["build-system", "build-backend"], True),
        (["build-system"], True),
        (["install"], False),
    ],
)
def test_loop_classification(edge_types, expected):
    assert is_build_time_loop(edge_types) is expected


def test_cycle_error_message_lists_path():
    error = CycleError(["a==1.0", "b==1.0", "a==1.0"], ["build-system", "build-system"])
    assert error.cycle == ["a==1.0", "b==1.0"]
    assert "a==1.0 -> b==1.0 -> a==1.0" in str(error)
    assert "build-system" in str(error)
    with pytest.raises(CycleError):
        raise error
