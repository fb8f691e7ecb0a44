from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, List

from .records import InsertResult, SpanRecord


class SpanSink(ABC):
    """Where span records go.

    ``insert_span`` either creates a row or, for ``is_merge`` records, updates
    the row with the same ``span_id``. Implementations report failures in the
    returned ``InsertResult`` rather than raising.
    """

    @abstractmethod
    def insert_span(self, record: SpanRecord) -> InsertResult:
        ...

    @abstractmethod
    def get_spans(self) -> List[SpanRecord]:
        ...


class InMemorySpanSink(SpanSink):
    """Merge-or-insert collector used by tests and for local tree assembly."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._spans: List[SpanRecord] = []
        self._index: Dict[str, int] = {}  # span_id -> position in _spans
        # Merges that found no row to update and were stored as new rows.
        self.unmatched_merges = 0

    def insert_span(self, record: SpanRecord) -> InsertResult:
        with self._lock:
            if record.is_merge:
                pos = self._index.get(record.span_id)
                if pos is not None:
                    self._spans[pos] = self._spans[pos].merged_with(record)
                    return InsertResult(span_id=record.span_id)
                self.unmatched_merges += 1
            self._index.setdefault(record.span_id, len(self._spans))
            self._spans.append(record)
            return InsertResult(span_id=record.span_id)

    def get_spans(self) -> List[SpanRecord]:
        with self._lock:
            return list(self._spans)

    def clear(self) -> None:
        with self._lock:
            self._spans = []
            self._index = {}
            self.unmatched_merges = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._spans)
