"""Arena-style heap graph and the cycle-safe traversals run over it.

A heap snapshot is a cyclic object-reference graph that can hold millions
of nodes, so nodes and edges live in flat tuples and every relation is an
integer index into them.  All traversals are iterative with an explicit
visited set; nothing here recurses, so deep retention chains and
reference cycles are handled the same way as trees.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, asdict
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set, Tuple, Union

from rundiag.errors import MalformedGraphError

logger = logging.getLogger(__name__)


# Edge kinds that do not keep their target alive.
NON_RETAINING_EDGE_KINDS = frozenset({"weak", "shortcut"})


# ============================================================================
# Data classes
# ============================================================================


@dataclass(frozen=True)
class HeapNode:
    """A single object in a heap snapshot."""

    id: int
    type: str
    name: str
    self_size: int
    retained_size: Optional[int] = None
    retained_approximate: bool = False
    detachedness: int = 0  # V8: 0 unknown, 1 attached, 2 detached

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class HeapEdge:
    """A reference from one heap object to another."""

    from_id: int
    to_id: int
    kind: str
    name_or_index: Union[str, int] = ""

    @property
    def is_retaining(self) -> bool:
        return self.kind not in NON_RETAINING_EDGE_KINDS

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


# ============================================================================
# Heap graph
# ============================================================================


class HeapGraph:
    """Immutable node/edge graph with index-based adjacency.

    Edges are stored by node id, as they appear in the data model, and are
    resolved once to node indexes on construction.  Edges pointing at ids
    that do not exist are kept aside as *dangling*; they are excluded from
    adjacency and make :meth:`check_integrity` raise.
    """

    def __init__(self, nodes: Sequence[HeapNode], edges: Sequence[HeapEdge]) -> None:
        self._nodes: Tuple[HeapNode, ...] = tuple(nodes)
        self._edges: Tuple[HeapEdge, ...] = tuple(edges)

        index: Dict[int, int] = {}
        duplicates = 0
        for i, node in enumerate(self._nodes):
            if node.id in index:
                duplicates += 1
                continue
            index[node.id] = i
        self._index = index
        self._duplicate_ids = duplicates

        out_edges: List[List[int]] = [[] for _ in self._nodes]
        in_edges: List[List[int]] = [[] for _ in self._nodes]
        dangling: List[int] = []
        for e, edge in enumerate(self._edges):
            src = index.get(edge.from_id)
            dst = index.get(edge.to_id)
            if src is None or dst is None:
                dangling.append(e)
                continue
            out_edges[src].append(e)
            in_edges[dst].append(e)

        self._out: Tuple[Tuple[int, ...], ...] = tuple(tuple(x) for x in out_edges)
        self._in: Tuple[Tuple[int, ...], ...] = tuple(tuple(x) for x in in_edges)
        self._dangling: Tuple[int, ...] = tuple(dangling)

        if dangling:
            logger.debug("Heap graph has %d dangling edge(s).", len(dangling))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> Tuple[HeapNode, ...]:
        return self._nodes

    @property
    def edges(self) -> Tuple[HeapEdge, ...]:
        return self._edges

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    @property
    def total_self_size(self) -> int:
        return sum(n.self_size for n in self._nodes)

    @property
    def dangling_edges(self) -> Tuple[HeapEdge, ...]:
        return tuple(self._edges[e] for e in self._dangling)

    def node(self, index: int) -> HeapNode:
        return self._nodes[index]

    def index_of(self, node_id: int) -> int:
        """Return the arena index of *node_id*.

        Raises
        ------
        MalformedGraphError
            If no node carries that id.
        """
        try:
            return self._index[node_id]
        except KeyError:
            raise MalformedGraphError(f"Unknown heap node id {node_id}") from None

    def has_node(self, node_id: int) -> bool:
        return node_id in self._index

    def out_edges(self, index: int) -> Tuple[HeapEdge, ...]:
        return tuple(self._edges[e] for e in self._out[index])

    def in_edges(self, index: int) -> Tuple[HeapEdge, ...]:
        return tuple(self._edges[e] for e in self._in[index])

    def children(self, index: int, retaining_only: bool = True) -> List[int]:
        """Indexes of nodes referenced by *index*, in edge order."""
        result: List[int] = []
        for e in self._out[index]:
            edge = self._edges[e]
            if retaining_only and not edge.is_retaining:
                continue
            result.append(self._index[edge.to_id])
        return result

    def retainers(self, index: int, retaining_only: bool = True) -> List[int]:
        """Indexes of nodes holding a reference to *index*."""
        result: List[int] = []
        for e in self._in[index]:
            edge = self._edges[e]
            if retaining_only and not edge.is_retaining:
                continue
            result.append(self._index[edge.from_id])
        return result

    def check_integrity(self) -> None:
        """Raise :class:`MalformedGraphError` if any edge or id is invalid."""
        if self._dangling:
            first = self._edges[self._dangling[0]]
            raise MalformedGraphError(
                f"{len(self._dangling)} edge(s) reference missing nodes "
                f"(first: {first.from_id} -> {first.to_id})",
                dangling_edges=len(self._dangling),
            )
        if self._duplicate_ids:
            raise MalformedGraphError(
                f"{self._duplicate_ids} node id(s) appear more than once"
            )

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"HeapGraph(nodes={len(self._nodes)}, edges={len(self._edges)})"


# ============================================================================
# Traversals
# ============================================================================

BoundaryFn = Callable[[HeapNode], bool]


@dataclass(frozen=True)
class Reach:
    """Nodes collected by a traversal, in discovery order."""

    members: Tuple[int, ...]
    truncated: bool

    @property
    def size(self) -> int:
        return len(self.members)


def reachable(
    graph: HeapGraph,
    start: int,
    boundary: Optional[BoundaryFn] = None,
    budget: Optional[int] = None,
) -> Reach:
    """Breadth-first walk over retaining edges starting at *start*.

    Nodes for which *boundary* returns true are neither collected nor
    expanded (the start node is always collected).  When *budget* nodes
    have been collected the walk stops and the result is marked truncated.
    """
    visited: Set[int] = {start}
    order: List[int] = [start]
    queue: Deque[int] = deque([start])
    truncated = False

    while queue:
        current = queue.popleft()
        for child in graph.children(current):
            if child in visited:
                continue
            visited.add(child)
            if boundary is not None and boundary(graph.node(child)):
                continue
            if budget is not None and len(order) >= budget:
                truncated = True
                queue.clear()
                break
            order.append(child)
            queue.append(child)

    return Reach(members=tuple(order), truncated=truncated)


def exclusive_reach(
    graph: HeapGraph,
    root: int,
    boundary: Optional[BoundaryFn] = None,
    budget: Optional[int] = None,
) -> Reach:
    """Nodes reachable from *root* that are retained only from inside the set.

    Starts from :func:`reachable`, then repeatedly evicts every non-root
    member that has a retainer outside the set.  Evicting a node can expose
    its own children, so eviction propagates through a work queue until
    the set is stable.  The result approximates the objects that would be
    freed together with *root*.
    """
    reach = reachable(graph, root, boundary=boundary, budget=budget)
    members: Set[int] = set(reach.members)

    pending: Deque[int] = deque()
    queued: Set[int] = set()
    for index in reach.members:
        if index == root:
            continue
        if any(r not in members for r in graph.retainers(index)):
            pending.append(index)
            queued.add(index)

    while pending:
        index = pending.popleft()
        members.discard(index)
        for child in graph.children(index):
            if child == root or child in queued or child not in members:
                continue
            pending.append(child)
            queued.add(child)

    kept = tuple(i for i in reach.members if i in members)
    return Reach(members=kept, truncated=reach.truncated)


def approximate_retained_size(
    graph: HeapGraph,
    index: int,
    boundary: Optional[BoundaryFn] = None,
    budget: Optional[int] = None,
) -> Tuple[int, bool]:
    """Return ``(size, truncated)`` for the exclusive reach of *index*.

    This is an approximation of retained size, not dominator-tree
    semantics: an object shared through a path the walk never entered
    (a boundary node) can still be charged to *index*.
    """
    reach = exclusive_reach(graph, index, boundary=boundary, budget=budget)
    size = sum(max(graph.node(i).self_size, 0) for i in reach.members)
    return size, reach.truncated


def find_retaining_path(
    graph: HeapGraph,
    index: int,
    max_depth: int = 10,
) -> List[int]:
    """Shortest chain of retainers from a GC root down to *index*.

    Walks incoming retaining edges breadth first.  A node with no retainers
    or of type ``synthetic`` counts as a root.  The returned list is
    root-first and ends with *index*; if no root is found within
    *max_depth* hops the longest explored chain is returned instead.
    """
    parents: Dict[int, Optional[int]] = {index: None}
    queue: Deque[Tuple[int, int]] = deque([(index, 0)])
    deepest = index

    def _chain(node: int) -> List[int]:
        path: List[int] = []
        cursor: Optional[int] = node
        while cursor is not None:
            path.append(cursor)
            cursor = parents[cursor]
        return path

    while queue:
        current, depth = queue.popleft()
        retainers = graph.retainers(current)
        if current != index and (not retainers or graph.node(current).type == "synthetic"):
            return _chain(current)
        if depth >= max_depth:
            continue
        for retainer in retainers:
            if retainer in parents:
                continue
            parents[retainer] = current
            deepest = retainer
            queue.append((retainer, depth + 1))

    return _chain(deepest)
