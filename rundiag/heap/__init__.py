"""Heap snapshot parsing, graph traversal and leak detection."""

from rundiag.heap.graph import HeapEdge, HeapGraph, HeapNode
from rundiag.heap.leak_detector import (
    LeakAnalysisResult,
    LeakDetector,
    LeakFinding,
    MemorySample,
    MemoryTimeline,
)
from rundiag.heap.node_classifier import NodeKind, classify_node
from rundiag.heap.snapshot_ingester import SnapshotAssembler, SnapshotIngester

__all__ = [
    "HeapEdge",
    "HeapGraph",
    "HeapNode",
    "LeakAnalysisResult",
    "LeakDetector",
    "LeakFinding",
    "MemorySample",
    "MemoryTimeline",
    "NodeKind",
    "classify_node",
    "SnapshotAssembler",
    "SnapshotIngester",
]
