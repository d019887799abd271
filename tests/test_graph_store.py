"""Tests for graph.json and build-order.json persistence."""

import json

import pytest

from fromsource._internal.io.graph_store import (
    GraphStoreError,
    load_build_order,
    load_graph,
    save_build_order,
    save_graph,
)
from fromsource.codes import EdgeType
from fromsource.kernel.bootstrap import BuildOrderEntry
from fromsource.kernel.graph import ROOT_KEY, DependencyGraph, DependencyNode


def _graph():
    graph = DependencyGraph()
    graph.add_node(DependencyNode(canonical_name="app", version="1.0", download_url="https://x/app-1.0.tar.gz"))
    graph.add_node(DependencyNode(canonical_name="tool", version="2.0", pre_built=True, constraint="tool<3"))
    graph.add_edge(ROOT_KEY, "app==1.0", EdgeType.TOPLEVEL, "app")
    graph.add_edge("app==1.0", "tool==2.0", EdgeType.BUILD_SYSTEM, "tool>=2")
    return graph


def test_graph_round_trip(tmp_path):
    path = save_graph(_graph(), tmp_path / "work" / "graph.json")
    assert path.exists()
    assert load_graph(path) == _graph()


def test_graph_file_is_canonical(tmp_path):
    first = save_graph(_graph(), tmp_path / "one.json").read_text(encoding="utf-8")
    second = save_graph(_graph(), tmp_path / "two.json").read_text(encoding="utf-8")
    assert first == second
    data = json.loads(first)
    assert list(data) == sorted(data)
    assert data["app==1.0"]["edges"] == [{"key": "tool==2.0", "req": "tool>=2", "req_type": "build-system"}]


def test_missing_graph_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_graph(tmp_path / "nope.json")


def test_invalid_graph_files(tmp_path):
    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{not json", encoding="utf-8")
    with pytest.raises(GraphStoreError):
        load_graph(bad_json)

    not_object = tmp_path / "list.json"
    not_object.write_text("[]", encoding="utf-8")
    with pytest.raises(GraphStoreError):
        load_graph(not_object)

    dangling = tmp_path / "dangling.json"
    data = _graph().to_dict()
    data["app==1.0"]["edges"].append({"key": "ghost==1.0", "req_type": "install", "req": "ghost"})
    dangling.write_text(json.dumps(data), encoding="utf-8")
    with pytest.raises(GraphStoreError, match="missing node"):
        load_graph(dangling)


def test_build_order_round_trip(tmp_path):
    entries = [
        BuildOrderEntry(req="tool>=2", type=EdgeType.BUILD_SYSTEM, dist="tool", version="2.0",
                        prebuilt=True, why=[("toplevel", "app", "1.0")]),
        BuildOrderEntry(req="app", type=EdgeType.TOPLEVEL, dist="app", version="1.0",
                        source_url="https://x/app-1.0.tar.gz"),
    ]
    path = save_build_order(entries, tmp_path / "build-order.json")
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert [item["dist"] for item in raw] == ["tool", "app"]
    assert raw[0]["type"] == "build-system"
    assert raw[0]["why"] == [["toplevel", "app", "1.0"]]
    assert load_build_order(path) == entries


def test_invalid_build_order(tmp_path):
    path = tmp_path / "build-order.json"
    path.write_text(json.dumps([{"dist": "x"}]), encoding="utf-8")
    with pytest.raises(GraphStoreError):
        load_build_order(path)
    path.write_text("{}", encoding="utf-8")
    with pytest.raises(GraphStoreError):
        load_build_order(path)
