"""Heap snapshot ingestion.

Parses raw V8 heap-profiler documents (the ``.heapsnapshot`` layout, where
nodes and edges are flattened integer arrays described by
``snapshot.meta``) into a :class:`HeapGraph`.  Captures taken over the
DevTools protocol arrive as a series of string fragments, so the module
also provides :class:`SnapshotAssembler` to reassemble them under a memory
budget before parsing.

Parsing is strict: any misalignment between the metadata and the flat
arrays raises :class:`MalformedSnapshotError` rather than producing a
silently truncated graph.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from rundiag.config import HeapLimits
from rundiag.errors import MalformedSnapshotError, ResourceExhaustedError
from rundiag.heap.graph import HeapEdge, HeapGraph, HeapNode, approximate_retained_size
from rundiag.heap.node_classifier import is_traversal_boundary

logger = logging.getLogger(__name__)

RawSnapshot = Union[bytes, bytearray, str, Mapping[str, Any]]

_REQUIRED_NODE_FIELDS = ("type", "name", "id", "self_size", "edge_count")
_REQUIRED_EDGE_FIELDS = ("type", "name_or_index", "to_node")

# Edge kinds whose ``name_or_index`` is a numeric index, not a string id.
_INDEXED_EDGE_KINDS = frozenset({"element", "hidden"})


# ============================================================================
# Chunk reassembly
# ============================================================================


class SnapshotAssembler:
    """Collect snapshot fragments and join them into one document.

    Usage::

        assembler = SnapshotAssembler()
        for chunk in chunks:
            assembler.add_chunk(chunk)
        graph = SnapshotIngester().parse(assembler.assemble())
    """

    def __init__(self, max_bytes: Optional[int] = None) -> None:
        self._max_bytes = max_bytes if max_bytes is not None else HeapLimits().max_snapshot_bytes
        self._chunks: List[bytes] = []
        self._size = 0

    @property
    def size(self) -> int:
        return self._size

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    def add_chunk(self, chunk: Union[str, bytes, bytearray]) -> None:
        data = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
        if self._size + len(data) > self._max_bytes:
            raise ResourceExhaustedError(
                f"Snapshot exceeds budget of {self._max_bytes} bytes",
                limit=self._max_bytes,
                observed=self._size + len(data),
            )
        self._chunks.append(data)
        self._size += len(data)

    def assemble(self) -> bytes:
        return b"".join(self._chunks)

    def reset(self) -> None:
        self._chunks = []
        self._size = 0


# ============================================================================
# Ingester
# ============================================================================


class SnapshotIngester:
    """Turn raw heap-snapshot documents into :class:`HeapGraph` values.

    Parameters
    ----------
    limits:
        Memory budget (``max_snapshot_bytes``, ``max_nodes``) and the
        traversal budget used when approximating retained sizes.
    approximate_retained:
        When the document carries no ``retained_size`` field, compute an
        approximation for every node at parse time.  This walks the graph
        once per node, so it is only practical for small snapshots; by
        default sizes are approximated on demand by the leak detector.
    """

    def __init__(
        self,
        limits: Optional[HeapLimits] = None,
        approximate_retained: bool = False,
    ) -> None:
        self._limits = limits or HeapLimits()
        self._approximate_retained = approximate_retained

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def parse(self, raw: RawSnapshot) -> HeapGraph:
        """Parse a complete snapshot document.

        Raises
        ------
        MalformedSnapshotError
            If the document is not valid JSON, lacks a required section, or
            its flat arrays disagree with the declared field layout.
        ResourceExhaustedError
            If the document exceeds the configured size or node budget.
        """
        document = self._decode(raw)
        graph = self._build_graph(document)
        if self._approximate_retained and not self._has_retained_sizes(graph):
            graph = self._with_approximate_retained(graph)
        logger.debug(
            "Parsed heap snapshot: %d nodes, %d edges", graph.node_count, graph.edge_count,
        )
        return graph

    def parse_chunks(self, chunks: Iterable[Union[str, bytes, bytearray]]) -> HeapGraph:
        """Reassemble fragments in arrival order and parse the result."""
        assembler = SnapshotAssembler(max_bytes=self._limits.max_snapshot_bytes)
        for chunk in chunks:
            assembler.add_chunk(chunk)
        logger.debug("Reassembled %d snapshot chunk(s), %d bytes", assembler.chunk_count, assembler.size)
        return self.parse(assembler.assemble())

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _decode(self, raw: RawSnapshot) -> Mapping[str, Any]:
        if isinstance(raw, Mapping):
            return raw

        if isinstance(raw, str):
            size = len(raw.encode("utf-8"))
        elif isinstance(raw, (bytes, bytearray)):
            size = len(raw)
        else:
            raise MalformedSnapshotError(
                f"Unsupported snapshot payload type {type(raw).__name__}"
            )

        if size > self._limits.max_snapshot_bytes:
            raise ResourceExhaustedError(
                f"Snapshot of {size} bytes exceeds budget of "
                f"{self._limits.max_snapshot_bytes} bytes",
                limit=self._limits.max_snapshot_bytes,
                observed=size,
            )

        try:
            document = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedSnapshotError(f"Snapshot is not valid JSON: {exc}") from exc

        if not isinstance(document, dict):
            raise MalformedSnapshotError("Snapshot root must be a JSON object")
        return document

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def _build_graph(self, document: Mapping[str, Any]) -> HeapGraph:
        meta = self._require_mapping(self._require_mapping(document, "snapshot"), "meta")
        snapshot = document["snapshot"]

        node_fields = self._require_list(meta, "node_fields")
        edge_fields = self._require_list(meta, "edge_fields")
        node_type_names = self._type_names(meta, "node_types")
        edge_type_names = self._type_names(meta, "edge_types")
        nodes_flat = self._require_list(document, "nodes")
        edges_flat = self._require_list(document, "edges")
        strings = self._require_list(document, "strings")

        node_pos = self._field_positions(node_fields, _REQUIRED_NODE_FIELDS, "node")
        edge_pos = self._field_positions(edge_fields, _REQUIRED_EDGE_FIELDS, "edge")
        retained_pos = node_fields.index("retained_size") if "retained_size" in node_fields else None
        detached_pos = node_fields.index("detachedness") if "detachedness" in node_fields else None

        nf = len(node_fields)
        ef = len(edge_fields)
        if len(nodes_flat) % nf != 0:
            raise MalformedSnapshotError(
                f"nodes array length {len(nodes_flat)} is not a multiple of {nf} node fields"
            )
        if len(edges_flat) % ef != 0:
            raise MalformedSnapshotError(
                f"edges array length {len(edges_flat)} is not a multiple of {ef} edge fields"
            )

        node_total = len(nodes_flat) // nf
        edge_total = len(edges_flat) // ef
        self._check_declared_count(snapshot, "node_count", node_total)
        self._check_declared_count(snapshot, "edge_count", edge_total)

        if node_total > self._limits.max_nodes:
            raise ResourceExhaustedError(
                f"Snapshot has {node_total} nodes, budget is {self._limits.max_nodes}",
                limit=self._limits.max_nodes,
                observed=node_total,
            )

        nodes: List[HeapNode] = []
        edge_counts: List[int] = []
        for i in range(node_total):
            row = nodes_flat[i * nf:(i + 1) * nf]
            count = self._int(row[node_pos["edge_count"]], "edge_count")
            if count < 0:
                raise MalformedSnapshotError(f"Node {i} declares a negative edge_count ({count})")
            edge_counts.append(count)
            retained = None
            if retained_pos is not None:
                retained = self._int(row[retained_pos], "retained_size")
            nodes.append(
                HeapNode(
                    id=self._int(row[node_pos["id"]], "id"),
                    type=self._lookup(node_type_names, row[node_pos["type"]], "node type"),
                    name=self._lookup(strings, row[node_pos["name"]], "string"),
                    self_size=self._int(row[node_pos["self_size"]], "self_size"),
                    retained_size=retained,
                    detachedness=self._int(row[detached_pos], "detachedness") if detached_pos is not None else 0,
                )
            )

        if sum(edge_counts) != edge_total:
            raise MalformedSnapshotError(
                f"Nodes declare {sum(edge_counts)} edges but the edges array holds {edge_total}"
            )

        edges: List[HeapEdge] = []
        cursor = 0
        for i, count in enumerate(edge_counts):
            from_id = nodes[i].id
            for _ in range(count):
                row = edges_flat[cursor * ef:(cursor + 1) * ef]
                cursor += 1
                kind = self._lookup(edge_type_names, row[edge_pos["type"]], "edge type")
                to_offset = self._int(row[edge_pos["to_node"]], "to_node")
                if to_offset % nf != 0 or not 0 <= to_offset < len(nodes_flat):
                    raise MalformedSnapshotError(
                        f"Edge {cursor - 1} points at invalid node offset {to_offset}"
                    )
                raw_name = row[edge_pos["name_or_index"]]
                if kind in _INDEXED_EDGE_KINDS:
                    name_or_index: Union[str, int] = self._int(raw_name, "name_or_index")
                else:
                    name_or_index = self._lookup(strings, raw_name, "string")
                edges.append(
                    HeapEdge(
                        from_id=from_id,
                        to_id=nodes[to_offset // nf].id,
                        kind=kind,
                        name_or_index=name_or_index,
                    )
                )

        graph = HeapGraph(nodes, edges)
        if graph.node_count != len(set(n.id for n in nodes)):
            raise MalformedSnapshotError("Snapshot contains duplicate node ids")
        return graph

    def _with_approximate_retained(self, graph: HeapGraph) -> HeapGraph:
        nodes: List[HeapNode] = []
        for i, node in enumerate(graph.nodes):
            size, _ = approximate_retained_size(
                graph, i,
                boundary=is_traversal_boundary,
                budget=self._limits.max_traversal_nodes,
            )
            nodes.append(
                HeapNode(
                    id=node.id,
                    type=node.type,
                    name=node.name,
                    self_size=node.self_size,
                    retained_size=size,
                    retained_approximate=True,
                    detachedness=node.detachedness,
                )
            )
        return HeapGraph(nodes, graph.edges)

    @staticmethod
    def _has_retained_sizes(graph: HeapGraph) -> bool:
        return any(n.retained_size is not None for n in graph.nodes)

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_mapping(container: Mapping[str, Any], key: str) -> Mapping[str, Any]:
        value = container.get(key)
        if not isinstance(value, Mapping):
            raise MalformedSnapshotError(f"Snapshot is missing the '{key}' section")
        return value

    @staticmethod
    def _require_list(container: Mapping[str, Any], key: str) -> List[Any]:
        value = container.get(key)
        if not isinstance(value, list):
            raise MalformedSnapshotError(f"Snapshot is missing the '{key}' array")
        return value

    @staticmethod
    def _type_names(meta: Mapping[str, Any], key: str) -> Sequence[str]:
        value = meta.get(key)
        if not isinstance(value, list) or not value or not isinstance(value[0], list):
            raise MalformedSnapshotError(f"Snapshot meta is missing '{key}'")
        return value[0]

    @staticmethod
    def _field_positions(
        fields: List[Any], required: Sequence[str], what: str,
    ) -> Dict[str, int]:
        missing = [f for f in required if f not in fields]
        if missing:
            raise MalformedSnapshotError(
                f"Snapshot {what}_fields lacks required field(s): {', '.join(missing)}"
            )
        return {f: fields.index(f) for f in required}

    @staticmethod
    def _check_declared_count(snapshot: Mapping[str, Any], key: str, actual: int) -> None:
        declared = snapshot.get(key)
        if declared is not None and declared != actual:
            raise MalformedSnapshotError(
                f"Snapshot declares {key}={declared} but contains {actual}"
            )

    @staticmethod
    def _int(value: Any, what: str) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedSnapshotError(f"Non-numeric {what} value {value!r}")
        return int(value)

    @classmethod
    def _lookup(cls, table: Sequence[Any], value: Any, what: str) -> str:
        index = cls._int(value, what)
        if not 0 <= index < len(table):
            raise MalformedSnapshotError(f"{what} index {index} out of range")
        return str(table[index])
