"""Classify heap nodes into the roles the leak detector cares about.

Heap snapshots do not label objects as "DOM" or "closure" directly; the
role has to be inferred from the node type, its name and (on newer V8
builds) the ``detachedness`` field.  All of that guessing lives here in a
single pure function so the detectors never inspect names themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict

from rundiag.heap.graph import HeapNode


class NodeKind(str, Enum):
    """Role of a heap object for leak analysis."""

    dom = "dom"
    closure = "closure"
    detached = "detached"
    other = "other"


@dataclass(frozen=True)
class Classification:
    kind: NodeKind
    confidence: float  # 0.0 – 1.0
    reason: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "confidence": self.confidence,
            "reason": self.reason,
        }


# V8 ``detachedness`` values.
_DETACHEDNESS_ATTACHED: int = 1
_DETACHEDNESS_DETACHED: int = 2

_DETACHED_PREFIX = "Detached "

# Native names that denote DOM objects.
_DOM_NAME = re.compile(
    r"^(HTML\w*Element|SVG\w*Element|Element|Text|Comment|Document|"
    r"DocumentFragment|ShadowRoot|CharacterData|Attr|Node|NodeList|"
    r"HTMLCollection|DOMTokenList|CSSStyleDeclaration)\b"
)

# Global objects and native contexts reachable from almost every closure.
_GLOBAL_NAME = re.compile(r"^(Window\b|global\b|system / NativeContext)")


def classify_node(node: HeapNode) -> Classification:
    """Return the role of *node* with a confidence score."""
    if node.detachedness == _DETACHEDNESS_DETACHED:
        return Classification(NodeKind.detached, 1.0, "detachedness flag")

    # String nodes carry their contents as the name.
    if node.type in ("native", "object") and node.name.startswith(_DETACHED_PREFIX):
        return Classification(NodeKind.detached, 0.9, "name prefix")

    if node.type == "closure":
        return Classification(NodeKind.closure, 1.0, "closure node type")

    if node.detachedness == _DETACHEDNESS_ATTACHED:
        return Classification(NodeKind.dom, 1.0, "detachedness flag")

    if node.type in ("native", "object") and _DOM_NAME.match(node.name):
        confidence = 0.8 if node.type == "native" else 0.6
        return Classification(NodeKind.dom, confidence, "DOM constructor name")

    return Classification(NodeKind.other, 1.0, "no DOM or closure marker")


def is_traversal_boundary(node: HeapNode) -> bool:
    """Whether retention walks should stop at *node*.

    Synthetic roots, global objects and attached DOM link to the whole
    live heap, so a walk that enters them would charge everything to its
    start node.
    """
    if node.type == "synthetic" or _GLOBAL_NAME.match(node.name):
        return True
    return classify_node(node).kind is NodeKind.dom
