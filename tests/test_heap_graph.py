"""Tests for rundiag.heap.graph and rundiag.heap.node_classifier."""

import pytest

from rundiag.errors import MalformedGraphError
from rundiag.heap.graph import (
    HeapEdge,
    HeapGraph,
    HeapNode,
    approximate_retained_size,
    exclusive_reach,
    find_retaining_path,
    reachable,
)
from rundiag.heap.node_classifier import NodeKind, classify_node, is_traversal_boundary


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _node(node_id: int, name: str = "", type: str = "object", size: int = 10, **kwargs) -> HeapNode:
    return HeapNode(id=node_id, type=type, name=name or f"n{node_id}", self_size=size, **kwargs)


def _edge(src: int, dst: int, kind: str = "property", name: str = "x") -> HeapEdge:
    return HeapEdge(from_id=src, to_id=dst, kind=kind, name_or_index=name)


def _make_chain(length: int) -> HeapGraph:
    nodes = [_node(i) for i in range(1, length + 1)]
    edges = [_edge(i, i + 1) for i in range(1, length)]
    return HeapGraph(nodes, edges)


# ---------------------------------------------------------------------------
# HeapGraph
# ---------------------------------------------------------------------------


class TestHeapGraph:
    def test_adjacency(self):
        graph = HeapGraph(
            [_node(10), _node(20), _node(30)],
            [_edge(10, 20), _edge(10, 30), _edge(30, 20)],
        )
        assert graph.children(graph.index_of(10)) == [1, 2]
        assert sorted(graph.retainers(graph.index_of(20))) == [0, 2]
        assert len(graph) == 3
        assert graph.total_self_size == 30

    def test_weak_edges_are_not_retaining(self):
        graph = HeapGraph([_node(1), _node(2)], [_edge(1, 2, kind="weak")])
        assert graph.children(0) == []
        assert graph.children(0, retaining_only=False) == [1]
        assert graph.retainers(1) == []

    def test_unknown_id(self):
        graph = _make_chain(2)
        assert not graph.has_node(99)
        with pytest.raises(MalformedGraphError):
            graph.index_of(99)

    def test_dangling_edges(self):
        graph = HeapGraph([_node(1)], [_edge(1, 2)])
        assert len(graph.dangling_edges) == 1
        assert graph.children(0) == []
        with pytest.raises(MalformedGraphError) as exc_info:
            graph.check_integrity()
        assert exc_info.value.dangling_edges == 1

    def test_duplicate_ids(self):
        graph = HeapGraph([_node(1), _node(1)], [])
        with pytest.raises(MalformedGraphError, match="more than once"):
            graph.check_integrity()

    def test_check_integrity_passes(self):
        _make_chain(3).check_integrity()

    def test_repr(self):
        assert repr(_make_chain(3)) == "HeapGraph(nodes=3, edges=2)"


# ---------------------------------------------------------------------------
# Traversals
# ---------------------------------------------------------------------------


class TestTraversals:
    def test_reachable_handles_cycles(self):
        graph = HeapGraph(
            [_node(1), _node(2), _node(3)],
            [_edge(1, 2), _edge(2, 3), _edge(3, 1)],
        )
        reach = reachable(graph, 0)
        assert sorted(reach.members) == [0, 1, 2]
        assert reach.truncated is False

    def test_reachable_deep_chain_without_recursion(self):
        graph = _make_chain(5000)
        assert reachable(graph, 0).size == 5000

    def test_reachable_stops_at_boundary(self):
        graph = HeapGraph(
            [_node(1), _node(2, type="synthetic"), _node(3)],
            [_edge(1, 2), _edge(2, 3)],
        )
        reach = reachable(graph, 0, boundary=lambda n: n.type == "synthetic")
        assert reach.members == (0,)

    def test_reachable_budget(self):
        reach = reachable(_make_chain(10), 0, budget=4)
        assert reach.size == 4
        assert reach.truncated is True

    def test_exclusive_reach_drops_shared_nodes(self):
        # 1 -> 2 -> 3, and 4 also retains 3.
        graph = HeapGraph(
            [_node(1), _node(2), _node(3), _node(4)],
            [_edge(1, 2), _edge(2, 3), _edge(4, 3)],
        )
        assert exclusive_reach(graph, 0).members == (0, 1)

    def test_exclusive_reach_propagates_eviction(self):
        # 3 is shared, so 3's child 5 goes with it.
        graph = HeapGraph(
            [_node(1), _node(2), _node(3), _node(4), _node(5)],
            [_edge(1, 2), _edge(1, 3), _edge(4, 3), _edge(3, 5)],
        )
        assert exclusive_reach(graph, 0).members == (0, 1)

    def test_exclusive_reach_keeps_internal_cycles(self):
        graph = HeapGraph(
            [_node(1), _node(2), _node(3)],
            [_edge(1, 2), _edge(2, 3), _edge(3, 2)],
        )
        assert sorted(exclusive_reach(graph, 0).members) == [0, 1, 2]

    def test_approximate_retained_size(self):
        graph = HeapGraph(
            [_node(1, size=5), _node(2, size=7), _node(3, size=100), _node(4)],
            [_edge(1, 2), _edge(2, 3), _edge(4, 3)],
        )
        size, truncated = approximate_retained_size(graph, 0)
        assert size == 12
        assert truncated is False

    def test_retaining_path_root_first(self):
        graph = HeapGraph(
            [_node(1, type="synthetic"), _node(2), _node(3), _node(4)],
            [_edge(1, 2), _edge(2, 3), _edge(3, 4)],
        )
        assert find_retaining_path(graph, 3) == [0, 1, 2, 3]

    def test_retaining_path_unretained_node(self):
        graph = _make_chain(3)
        assert find_retaining_path(graph, 0) == [0]

    def test_retaining_path_cycle_without_root(self):
        graph = HeapGraph(
            [_node(1), _node(2)],
            [_edge(1, 2), _edge(2, 1)],
        )
        path = find_retaining_path(graph, 1)
        assert path[-1] == 1
        assert len(path) == 2


# ---------------------------------------------------------------------------
# Node classification
# ---------------------------------------------------------------------------


class TestClassifyNode:
    def test_detachedness_flag(self):
        c = classify_node(_node(1, "HTMLDivElement", type="native", detachedness=2))
        assert c.kind is NodeKind.detached
        assert c.confidence == 1.0

    def test_detached_name_prefix(self):
        c = classify_node(_node(1, "Detached HTMLSpanElement", type="native"))
        assert c.kind is NodeKind.detached
        assert c.confidence == pytest.approx(0.9)

    def test_detached_prefix_ignored_for_strings(self):
        c = classify_node(_node(1, "Detached mode enabled", type="string"))
        assert c.kind is NodeKind.other

    def test_closure(self):
        assert classify_node(_node(1, "onClick", type="closure")).kind is NodeKind.closure

    def test_attached_flag(self):
        c = classify_node(_node(1, "Foo", type="object", detachedness=1))
        assert c.kind is NodeKind.dom
        assert c.confidence == 1.0

    def test_dom_name_native_beats_object(self):
        native = classify_node(_node(1, "HTMLDivElement", type="native"))
        obj = classify_node(_node(2, "HTMLDivElement", type="object"))
        assert native.kind is NodeKind.dom and obj.kind is NodeKind.dom
        assert native.confidence > obj.confidence

    def test_other(self):
        c = classify_node(_node(1, "Array"))
        assert c.kind is NodeKind.other
        assert c.to_dict()["kind"] == "other"

    def test_traversal_boundary(self):
        assert is_traversal_boundary(_node(1, "(GC roots)", type="synthetic"))
        assert is_traversal_boundary(_node(2, "Window / https://example.test", type="native"))
        assert is_traversal_boundary(_node(3, "HTMLBodyElement", type="native"))
        assert not is_traversal_boundary(_node(4, "Detached HTMLDivElement", type="native"))
        assert not is_traversal_boundary(_node(5, "Array"))
