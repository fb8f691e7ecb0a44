from __future__ import annotations

import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from langfuse import Langfuse

from o_trace.records import InsertResult, SpanRecord
from o_trace.span_sink import InMemorySpanSink, SpanSink


JsonDict = Dict[str, Any]


def _format_span_id(span_id_int: int) -> str:
    return format(span_id_int, "016x")


def _span_id_hex(span_obj: Any) -> Optional[str]:
    # Best-effort: LangfuseSpan/LangfuseGeneration holds an OTEL span.
    otel_span = getattr(span_obj, "_otel_span", None)
    if otel_span is None:
        return None
    try:
        ctx = otel_span.get_span_context()
        return _format_span_id(ctx.span_id)
    except Exception:
        return None


def _end_time_ns(end_ms: Optional[float]) -> Optional[int]:
    # Record times are epoch ms; the OTEL span behind an observation wants ns.
    if end_ms is None:
        return None
    return int(end_ms * 1_000_000)


def _usage_details(metrics: Optional[JsonDict]) -> Optional[Dict[str, int]]:
    if not metrics:
        return None
    out: Dict[str, int] = {}
    for src, dst in (("prompt_tokens", "input"), ("completion_tokens", "output"), ("tokens", "total")):
        val = metrics.get(src)
        if isinstance(val, int) and not isinstance(val, bool):
            out[dst] = val
    return out or None


@dataclass
class _OpenObservation:
    observation: Any
    trace_id: str
    root_span_id: str


class LangfuseSpanSink(SpanSink):
    """
    Persists span records as Langfuse observations.

    Every record sharing a ``root_span_id`` lands in one Langfuse trace whose id
    is derived from that root. ``llm`` records become generations, ``tool``
    records tool observations, everything else plain spans. Merge records
    update and end the matching open observation.
    """

    def __init__(self, client: Any, *, mirror: Optional[InMemorySpanSink] = None) -> None:
        self._client = client
        self._mirror = mirror
        self._lock = threading.Lock()
        self._open: Dict[str, _OpenObservation] = {}  # span_id -> observation awaiting its end
        self._langfuse_ids: Dict[str, str] = {}  # span_id -> OTEL span id (hex)
        self._trace_members: Dict[str, set[str]] = {}  # root_span_id -> span_ids
        self._last_error_ts = 0.0
        self.unmatched_merges = 0

    @staticmethod
    def create(
        *,
        public_key: Optional[str],
        secret_key: Optional[str],
        base_url: str,
        mirror: Optional[InMemorySpanSink] = None,
    ) -> Optional["LangfuseSpanSink"]:
        if not public_key or not secret_key:
            return None
        client = Langfuse(public_key=public_key, secret_key=secret_key, base_url=base_url, flush_at=15, flush_interval=10)
        return LangfuseSpanSink(client, mirror=mirror)

    def _report_error(self, err: BaseException) -> None:
        # Avoid noisy logs; report at most once per 10s.
        now = time.time()
        if now - self._last_error_ts >= 10.0:
            print(f"[o-trace] Langfuse client error: {err!r}", file=sys.stderr)
            self._last_error_ts = now

    @staticmethod
    def trace_id_for(root_span_id: str) -> str:
        return Langfuse.create_trace_id(seed=root_span_id)

    def insert_span(self, record: SpanRecord) -> InsertResult:
        if self._mirror is not None:
            self._mirror.insert_span(record)
        try:
            if record.is_merge:
                with self._lock:
                    open_obs = self._open.get(record.span_id)
                if open_obs is not None:
                    self._apply_merge(record, open_obs)
                    return InsertResult(span_id=record.span_id)
                # Same leniency as the in-memory sink: an unknown merge target
                # is recorded as a new observation.
                with self._lock:
                    self.unmatched_merges += 1
            self._start(record)
            return InsertResult(span_id=record.span_id)
        except Exception as err:
            self._report_error(err)
            return InsertResult.failed(repr(err))

    def get_spans(self) -> List[SpanRecord]:
        if self._mirror is None:
            return []
        return self._mirror.get_spans()

    def open_span_ids(self) -> List[str]:
        with self._lock:
            return list(self._open.keys())

    def _start(self, record: SpanRecord) -> None:
        trace_id = self.trace_id_for(record.root_span_id)
        trace_context: JsonDict = {"trace_id": trace_id}
        parent = record.parent_id
        with self._lock:
            parent_hex = self._langfuse_ids.get(parent) if parent else None
        if parent_hex:
            trace_context["parent_span_id"] = parent_hex

        metadata = dict(record.metadata or {})
        metadata["span_id"] = record.span_id
        name = record.name or record.span_type or "span"
        kind = record.span_type

        if kind == "llm":
            obs = self._client.start_observation(
                trace_context=trace_context,
                name=name,
                as_type="generation",
                model=metadata.get("model"),
                input=record.input,
                output=record.output,
                metadata=metadata,
                usage_details=_usage_details(record.metrics),
            )
        elif kind == "tool":
            obs = self._client.start_observation(
                trace_context=trace_context,
                name=name,
                as_type="tool",
                input=record.input,
                output=record.output,
                metadata=metadata,
            )
        else:
            obs = self._client.start_observation(
                trace_context=trace_context,
                name=name,
                as_type="span",
                input=record.input,
                output=record.output,
                metadata=metadata,
            )

        if record.span_id == record.root_span_id:
            # Set trace-level attributes via root span when possible
            try:
                obs.update_trace(
                    name=name,
                    session_id=metadata.get("session_id"),
                    metadata=record.metadata,
                )
            except Exception as err:
                self._report_error(err)

        hex_id = _span_id_hex(obs)
        with self._lock:
            if hex_id:
                self._langfuse_ids[record.span_id] = hex_id
            self._trace_members.setdefault(record.root_span_id, set()).add(record.span_id)

        if record.error:
            try:
                obs.update(level="ERROR", status_message=record.error)
            except Exception as err:
                self._report_error(err)

        if record.end is not None:
            obs.end(end_time=_end_time_ns(record.end))
            if record.span_id == record.root_span_id:
                self._forget_trace(record.root_span_id, record.end)
        else:
            with self._lock:
                self._open[record.span_id] = _OpenObservation(
                    observation=obs, trace_id=trace_id, root_span_id=record.root_span_id
                )

    def _apply_merge(self, record: SpanRecord, open_obs: _OpenObservation) -> None:
        obs = open_obs.observation
        update: JsonDict = {}
        if record.input is not None:
            update["input"] = record.input
        if record.output is not None:
            update["output"] = record.output
        if record.metadata:
            update["metadata"] = record.metadata
        if record.error:
            update["level"] = "ERROR"
            update["status_message"] = record.error
        if update:
            try:
                obs.update(**update)
            except Exception as err:
                self._report_error(err)

        if record.end is None:
            return
        with self._lock:
            self._open.pop(record.span_id, None)
        obs.end(end_time=_end_time_ns(record.end))
        if record.span_id == open_obs.root_span_id:
            self._forget_trace(open_obs.root_span_id, record.end)

    def _forget_trace(self, root_span_id: str, end_ms: Optional[float]) -> None:
        with self._lock:
            members = self._trace_members.pop(root_span_id, set())
            leftovers = [self._open.pop(sid) for sid in list(members) if sid in self._open]
            for sid in members:
                self._langfuse_ids.pop(sid, None)
        # End whatever the trace left open (e.g. a sub-agent that never went idle).
        for item in leftovers:
            try:
                item.observation.end(end_time=_end_time_ns(end_ms))
            except Exception as err:
                self._report_error(err)

    def flush(self) -> None:
        try:
            self._client.flush()
        except Exception as err:
            # Surface flush issues (auth/network) to daemon logs.
            self._report_error(err)
