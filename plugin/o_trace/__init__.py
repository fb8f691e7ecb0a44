from .clock import FakeClock, WallClock
from .event_processor import EventProcessor, ProcessorConfig
from .records import InsertResult, SpanRecord
from .router import EnvelopeRouter
from .span_sink import InMemorySpanSink, SpanSink
from .span_tree import SpanTree, spans_to_tree

__all__ = [
    "EnvelopeRouter",
    "EventProcessor",
    "FakeClock",
    "InMemorySpanSink",
    "InsertResult",
    "ProcessorConfig",
    "SpanRecord",
    "SpanSink",
    "SpanTree",
    "WallClock",
    "spans_to_tree",
]
