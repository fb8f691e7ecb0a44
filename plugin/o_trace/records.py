from __future__ import annotations

import datetime
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional


JsonDict = Dict[str, Any]

SPAN_TYPES = ("task", "llm", "tool", "function", "eval", "score")

# Keyed merges: an update adds or overwrites keys instead of replacing the dict.
_KEYWISE_FIELDS = ("metadata", "metrics")


def iso_from_ms(ts_ms: Any) -> Optional[str]:
    if not isinstance(ts_ms, (int, float)) or isinstance(ts_ms, bool):
        return None
    try:
        dt = datetime.datetime.fromtimestamp(float(ts_ms) / 1000.0, tz=datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def compact(d: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Drop None values; an empty result becomes None."""
    if not d:
        return None
    out = {k: v for k, v in d.items() if v is not None}
    return out or None


@dataclass
class SpanRecord:
    """One span row as sent to a sink.

    ``id`` may differ from ``span_id`` on creation, but merges are keyed by
    ``span_id`` and must reuse it as ``id``.
    """

    id: str
    span_id: str
    root_span_id: str
    span_parents: Optional[List[str]] = None
    created: Optional[str] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None
    span_attributes: Optional[Dict[str, Any]] = None
    is_merge: bool = False

    @property
    def name(self) -> Optional[str]:
        return (self.span_attributes or {}).get("name")

    @property
    def span_type(self) -> Optional[str]:
        return (self.span_attributes or {}).get("type")

    @property
    def parent_id(self) -> Optional[str]:
        return self.span_parents[0] if self.span_parents else None

    @property
    def start(self) -> Optional[float]:
        return (self.metrics or {}).get("start")

    @property
    def end(self) -> Optional[float]:
        return (self.metrics or {}).get("end")

    def merged_with(self, update: "SpanRecord") -> "SpanRecord":
        """Apply a merge update on top of this record and return the result."""
        changes: Dict[str, Any] = {}
        for f in fields(self):
            if f.name in ("id", "span_id", "is_merge"):
                continue
            new_val = getattr(update, f.name)
            if new_val is None:
                continue
            if f.name in _KEYWISE_FIELDS:
                combined = dict(getattr(self, f.name) or {})
                combined.update(new_val)
                changes[f.name] = combined
            else:
                changes[f.name] = new_val
        return replace(self, **changes)

    def to_dict(self) -> JsonDict:
        out: JsonDict = {}
        for f in fields(self):
            if f.name == "is_merge":
                continue
            val = getattr(self, f.name)
            if val is not None:
                out[f.name] = val
        if self.is_merge:
            out["_is_merge"] = True
        return out

    @classmethod
    def from_dict(cls, raw: JsonDict) -> "SpanRecord":
        parents = raw.get("span_parents")
        return cls(
            id=str(raw.get("id") or raw.get("span_id") or ""),
            span_id=str(raw.get("span_id") or raw.get("id") or ""),
            root_span_id=str(raw.get("root_span_id") or ""),
            span_parents=list(parents) if isinstance(parents, list) else None,
            created=raw.get("created"),
            input=raw.get("input"),
            output=raw.get("output"),
            error=raw.get("error"),
            metadata=raw.get("metadata") if isinstance(raw.get("metadata"), dict) else None,
            metrics=raw.get("metrics") if isinstance(raw.get("metrics"), dict) else None,
            span_attributes=raw.get("span_attributes") if isinstance(raw.get("span_attributes"), dict) else None,
            is_merge=bool(raw.get("_is_merge") or raw.get("is_merge")),
        )


@dataclass(frozen=True)
class InsertResult:
    span_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.span_id is not None and self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def failed(cls, reason: str) -> "InsertResult":
        return cls(span_id=None, error=reason)


@dataclass
class ProcessorStats:
    spans_emitted: int = 0
    spans_failed: int = 0
    events_dropped: int = 0
    last_error: Optional[str] = field(default=None)
