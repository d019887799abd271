"""Persist and load graph.json and build-order.json, and write constraints.txt."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, List

from pydantic import ValidationError

from ..canonical_json import canonical_dumps
from ...errors import GraphInvariantError
from ...kernel.bootstrap import BuildOrderEntry
from ...kernel.graph import DependencyGraph


class GraphStoreError(ValueError):
    """Raised when a persisted graph or build order cannot be loaded."""


def _write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Any:
    if not path.exists():
        raise FileNotFoundError(f"{path} does not exist")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise GraphStoreError(f"{path} is not valid JSON: {e}") from e


def save_graph(graph: DependencyGraph, path: Path) -> Path:
    """Write the graph as canonical, indented JSON (diffable across runs)."""
    path = Path(path)
    _write_atomic(path, canonical_dumps(graph.to_dict(), indent=2) + "\n")
    return path


def load_graph(path: Path) -> DependencyGraph:
    data = _read_json(Path(path))
    if not isinstance(data, dict):
        raise GraphStoreError(f"{path} must contain a JSON object")
    try:
        return DependencyGraph.from_dict(data)
    except GraphInvariantError as e:
        raise GraphStoreError(f"{path}: {e}") from e


def save_build_order(entries: List[BuildOrderEntry], path: Path) -> Path:
    """Write build-order.json; entry order is the build order and is preserved."""
    path = Path(path)
    data = [entry.model_dump(mode="json") for entry in entries]
    _write_atomic(path, canonical_dumps(data, indent=2) + "\n")
    return path


def load_build_order(path: Path) -> List[BuildOrderEntry]:
    data = _read_json(Path(path))
    if not isinstance(data, list):
        raise GraphStoreError(f"{path} must contain a JSON list")
    try:
        return [BuildOrderEntry(**item) for item in data]
    except (TypeError, ValidationError) as e:
        raise GraphStoreError(f"{path}: invalid build order entry: {e}") from e


def save_constraints(graph: DependencyGraph, path: Path) -> Path:
    """Write a constraints file pinning every resolved package (``name==version``).

    When a package was resolved to several versions the highest is pinned
    and the others are listed in a comment above it.
    """
    lines: List[str] = []
    names = sorted({node.canonical_name for node in graph.nodes.values() if not node.is_root})
    for name in names:
        versions = [node.version for node in graph.nodes_named(name)]
        if len(versions) > 1:
            lines.append(f"# {name} also resolved to {', '.join(versions[1:])}")
        lines.append(f"{name}=={versions[0]}")
    path = Path(path)
    _write_atomic(path, "".join(line + "\n" for line in lines))
    return path
