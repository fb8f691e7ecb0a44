from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .records import SpanRecord


@dataclass
class SpanTree:
    span_id: str
    root_span_id: str
    name: Optional[str] = None
    type: Optional[str] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    children: List["SpanTree"] = field(default_factory=list)

    def walk(self) -> Iterator["SpanTree"]:
        """Depth-first, pre-order."""
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, predicate: Callable[["SpanTree"], bool]) -> Optional["SpanTree"]:
        for node in self.walk():
            if predicate(node):
                return node
        return None

    def find_all(self, predicate: Callable[["SpanTree"], bool]) -> List["SpanTree"]:
        return [node for node in self.walk() if predicate(node)]


def _is_root(span: SpanRecord) -> bool:
    return not span.span_parents or span.span_parents[0] == span.span_id


def spans_to_tree(spans: Sequence[SpanRecord]) -> Optional[SpanTree]:
    """
    Rebuild the parent/child tree from a flat list of span records.

    The root is the first record without parents (or parented to itself).
    Only the first entry of ``span_parents`` is followed. Siblings are ordered
    by ``metrics.start`` with the original list position as tie-breaker, so
    spans recorded at the same millisecond keep their insertion order.
    The input sequence is left untouched.
    """
    if not spans:
        return None

    root = next((s for s in spans if _is_root(s)), None)
    if root is None:
        return None

    children_of: Dict[str, List[tuple[int, SpanRecord]]] = {}
    for pos, span in enumerate(spans):
        parent = span.parent_id
        if parent is None or parent == span.span_id:
            continue
        children_of.setdefault(parent, []).append((pos, span))

    def sort_key(item: tuple[int, SpanRecord]) -> tuple[float, int]:
        pos, span = item
        return (span.start or 0, pos)

    # Guards against parent cycles in malformed input.
    visiting: set[str] = set()

    def build(span: SpanRecord) -> SpanTree:
        visiting.add(span.span_id)
        kids = sorted(children_of.get(span.span_id, []), key=sort_key)
        node = SpanTree(
            span_id=span.span_id,
            root_span_id=span.root_span_id,
            name=span.name,
            type=span.span_type,
            input=span.input,
            output=span.output,
            error=span.error,
            metrics=dict(span.metrics) if span.metrics is not None else None,
            metadata=dict(span.metadata) if span.metadata is not None else None,
            children=[build(child) for _pos, child in kids if child.span_id not in visiting],
        )
        visiting.discard(span.span_id)
        return node

    return build(root)
