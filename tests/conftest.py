"""Shared fixtures for rundiag tests."""

from typing import Any, Dict, List, Sequence, Tuple

import pytest


NODE_FIELDS = ["type", "name", "id", "self_size", "edge_count", "trace_node_id", "detachedness"]
NODE_TYPES = [
    "hidden", "array", "string", "object", "code", "closure", "regexp",
    "number", "native", "synthetic", "concatenated string", "sliced string",
    "symbol", "bigint",
]
EDGE_FIELDS = ["type", "name_or_index", "to_node"]
EDGE_TYPES = ["context", "element", "property", "internal", "hidden", "shortcut", "weak"]


def build_raw_snapshot(
    nodes: Sequence[Dict[str, Any]],
    edges: Sequence[Tuple[int, str, Any, int]] = (),
) -> Dict[str, Any]:
    """Flatten node dicts and ``(from_id, kind, name_or_index, to_id)`` edges
    into the V8 heap snapshot layout."""
    strings: List[str] = []

    def _string(value: str) -> int:
        if value not in strings:
            strings.append(value)
        return strings.index(value)

    nf = len(NODE_FIELDS)
    offsets = {node["id"]: i * nf for i, node in enumerate(nodes)}
    outgoing: Dict[int, List[Tuple[int, str, Any, int]]] = {node["id"]: [] for node in nodes}
    for edge in edges:
        outgoing[edge[0]].append(edge)

    flat_nodes: List[int] = []
    flat_edges: List[int] = []
    for node in nodes:
        own = outgoing[node["id"]]
        flat_nodes.extend([
            NODE_TYPES.index(node.get("type", "object")),
            _string(node.get("name", "")),
            node["id"],
            node.get("self_size", 0),
            len(own),
            0,
            node.get("detachedness", 0),
        ])
        for _, kind, name, to_id in own:
            name_value = name if kind in ("element", "hidden") else _string(name)
            flat_edges.extend([EDGE_TYPES.index(kind), name_value, offsets[to_id]])

    return {
        "snapshot": {
            "meta": {
                "node_fields": NODE_FIELDS,
                "node_types": [NODE_TYPES, "string", "number", "number", "number", "number", "number"],
                "edge_fields": EDGE_FIELDS,
                "edge_types": [EDGE_TYPES, "string_or_number", "node"],
            },
            "node_count": len(nodes),
            "edge_count": len(flat_edges) // len(EDGE_FIELDS),
        },
        "nodes": flat_nodes,
        "edges": flat_edges,
        "strings": strings,
    }


# A page whose click handler closure keeps a removed <div> subtree alive.
# ``Shared`` is also held by the window, so it is not charged to the div.
LEAKY_PAGE_NODES = [
    {"id": 1, "type": "synthetic", "name": "(GC roots)"},
    {"id": 2, "type": "native", "name": "Window / https://example.test", "self_size": 64},
    {"id": 3, "type": "closure", "name": "onClick", "self_size": 100},
    {"id": 4, "type": "native", "name": "Detached HTMLDivElement", "self_size": 200},
    {"id": 5, "type": "native", "name": "Detached Text", "self_size": 50},
    {"id": 6, "type": "object", "name": "Array", "self_size": 1000},
    {"id": 7, "type": "object", "name": "Shared", "self_size": 30},
]
LEAKY_PAGE_EDGES = [
    (1, "element", 1, 2),
    (2, "property", "handler", 3),
    (3, "context", "el", 4),
    (4, "element", 0, 5),
    (4, "property", "data", 6),
    (4, "property", "shared", 7),
    (2, "property", "shared", 7),
]


@pytest.fixture
def make_raw_snapshot():
    return build_raw_snapshot


@pytest.fixture
def leaky_raw_snapshot():
    return build_raw_snapshot(LEAKY_PAGE_NODES, LEAKY_PAGE_EDGES)
