"""Centralized canonical JSON serialization.

Every persisted artifact (graph.json, build-order.json, cache index) is
written through this module so successive runs produce byte-identical,
diffable output for identical content.
"""

import json
from typing import Any


def canonical_dumps(obj: Any, *, indent: int | None = None) -> str:
    """
    Canonical JSON serialization.

    Rules:
    - UTF-8 encoding
    - Sorted keys
    - Stable separators (",", ":") in compact mode
    - Deterministic list ordering (lists must already be sorted before calling)

    Args:
        obj: Python object to serialize
        indent: Optional indentation for human-facing files; key order is
            still sorted so the output stays diffable.

    Returns:
        Canonical JSON string
    """
    if indent is None:
        return json.dumps(
            obj,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
    return json.dumps(
        obj,
        sort_keys=True,
        indent=indent,
        ensure_ascii=False,
    )
