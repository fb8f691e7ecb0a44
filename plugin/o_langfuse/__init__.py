from .span_sink import LangfuseSpanSink
from .tools import LangfuseTools

__all__ = ["LangfuseSpanSink", "LangfuseTools"]
