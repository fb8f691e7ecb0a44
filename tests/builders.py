"""
Event DSL for processor tests.

A session script is a list of items: plain bus events (dicts) built by the
functions below, or hook calls (``chat``/``tool``) which the runner turns into
``process_chat_message`` / ``process_tool_execute_*`` calls.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from unittest.mock import MagicMock

from langfuse import Langfuse, LangfuseSpan

from o_trace import EventProcessor, FakeClock, InMemorySpanSink, ProcessorConfig, SpanTree, spans_to_tree


JsonDict = Dict[str, Any]

BASE_MS = 1_000_000_000_000
DEFAULT_MODEL = {"providerID": "anthropic", "modelID": "claude-3-haiku"}


def counter_ids(prefix: str = "span") -> Callable[[], str]:
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


# -- bus events ---------------------------------------------------------------


def session_created(session_id: str, *, title: str = "Test") -> JsonDict:
    return {
        "type": "session.created",
        "properties": {"info": {"id": session_id, "projectID": "test-project", "directory": "/test", "title": title}},
    }


def child_session_created(session_id: str, parent_id: str, title: str) -> JsonDict:
    return {
        "type": "session.created",
        "properties": {
            "info": {"id": session_id, "parentID": parent_id, "projectID": "test-project", "title": title}
        },
    }


def session_idle(session_id: str) -> JsonDict:
    return {"type": "session.idle", "properties": {"sessionID": session_id}}


def session_deleted(session_id: str) -> JsonDict:
    return {"type": "session.deleted", "properties": {"info": {"id": session_id}}}


def session_error(session_id: str, name: str, message: str) -> JsonDict:
    return {
        "type": "session.error",
        "properties": {"sessionID": session_id, "error": {"name": name, "data": {"message": message}}},
    }


def text_part(
    session_id: str,
    message_id: str,
    text: str,
    *,
    part_id: Optional[str] = None,
    ended: bool = False,
) -> JsonDict:
    part: JsonDict = {
        "id": part_id or f"prt_text_{message_id}",
        "sessionID": session_id,
        "messageID": message_id,
        "type": "text",
        "text": text,
    }
    if ended:
        part["time"] = {"start": BASE_MS, "end": BASE_MS + 1}
    return {"type": "message.part.updated", "properties": {"part": part}}


def reasoning_part(session_id: str, message_id: str, text: str, *, part_id: Optional[str] = None) -> JsonDict:
    part = {
        "id": part_id or f"prt_reasoning_{message_id}",
        "sessionID": session_id,
        "messageID": message_id,
        "type": "reasoning",
        "text": text,
    }
    return {"type": "message.part.updated", "properties": {"part": part}}


def tool_call_part(session_id: str, message_id: str, call_id: str, tool: str, args: JsonDict) -> JsonDict:
    part = {
        "id": f"prt_tool_{call_id}",
        "sessionID": session_id,
        "messageID": message_id,
        "type": "tool",
        "callID": call_id,
        "tool": tool,
        "state": {"status": "running", "input": args, "time": {"start": BASE_MS}},
    }
    return {"type": "message.part.updated", "properties": {"part": part}}


def message_completed(
    session_id: str,
    message_id: str,
    *,
    tokens_in: int = 10,
    tokens_out: int = 5,
    reasoning_tokens: int = 0,
    model: Optional[JsonDict] = None,
    created: Optional[int] = None,
    completed: Optional[int] = None,
    role: str = "assistant",
) -> JsonDict:
    model = model or DEFAULT_MODEL
    created = BASE_MS + 100 if created is None else created
    time: JsonDict = {"created": created}
    if completed != 0:
        time["completed"] = created + 500 if completed is None else completed
    return {
        "type": "message.updated",
        "properties": {
            "info": {
                "id": message_id,
                "sessionID": session_id,
                "role": role,
                "time": time,
                "modelID": model["modelID"],
                "providerID": model["providerID"],
                "cost": 0.001,
                "tokens": {
                    "input": tokens_in,
                    "output": tokens_out,
                    "reasoning": reasoning_tokens,
                    "cache": {"read": 0, "write": 0},
                },
            }
        },
    }


def message_in_progress(session_id: str, message_id: str) -> JsonDict:
    return message_completed(session_id, message_id, completed=0)


# -- hook calls ---------------------------------------------------------------


@dataclass
class Chat:
    text: str
    model: Optional[JsonDict] = field(default_factory=lambda: dict(DEFAULT_MODEL))
    agent: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class Tool:
    call_id: str
    tool: str
    title: str
    args: JsonDict
    output: str
    session_id: Optional[str] = None
    before: bool = True


def chat(text: str, **kw: Any) -> Chat:
    return Chat(text, **kw)


def tool_execute(call_id: str, tool: str, title: str, args: JsonDict, output: str, **kw: Any) -> Tool:
    return Tool(call_id, tool, title, args, output, **kw)


Item = Union[JsonDict, Chat, Tool]


# -- runner -------------------------------------------------------------------


@dataclass
class Run:
    processor: EventProcessor
    sink: InMemorySpanSink
    clock: FakeClock

    @property
    def tree(self) -> Optional[SpanTree]:
        return spans_to_tree(self.sink.get_spans())

    def feed(self, session_id: str, *items: Item, step_ms: int = 10) -> "Run":
        for item in items:
            if isinstance(item, Chat):
                self.processor.process_chat_message(
                    item.session_id or session_id, item.text, model=item.model, agent=item.agent
                )
            elif isinstance(item, Tool):
                sid = item.session_id or session_id
                if item.before:
                    self.processor.process_tool_execute_before(sid, item.call_id)
                    self.clock.advance(step_ms)
                self.processor.process_tool_execute_after(
                    sid, item.call_id, item.tool, item.title, item.output, item.args
                )
            else:
                self.processor.process_event(item)
            self.clock.advance(step_ms)
        return self


def new_run(
    *,
    project_name: Optional[str] = "test-project",
    worktree: Optional[str] = "/test",
    sink: Optional[InMemorySpanSink] = None,
    log: Any = None,
) -> Run:
    clock = FakeClock(BASE_MS)
    sink = sink if sink is not None else InMemorySpanSink()
    processor = EventProcessor(
        sink,
        ProcessorConfig(project_name=project_name, worktree=worktree, directory=worktree, include_system_metadata=False),
        clock=clock,
        new_id=counter_ids(),
        log=log,
    )
    return Run(processor=processor, sink=sink, clock=clock)


def events_to_tree(session_id: str, *items: Item) -> Optional[SpanTree]:
    return new_run().feed(session_id, *items).tree


def children_named(node: SpanTree, prefix: str) -> List[SpanTree]:
    return [c for c in node.children if (c.name or "").startswith(prefix)]


# -- Langfuse client double ----------------------------------------------------


def fake_langfuse_client() -> MagicMock:
    """Langfuse client double restricted to the real client's API.

    Observations carry distinct OTEL span ids so parent links can be checked.
    """
    client = MagicMock(spec=Langfuse)
    client.observations = []
    ids = itertools.count(0x1000)

    def _new_observation(*_args, **_kwargs):
        obs = MagicMock(spec=LangfuseSpan)
        obs._otel_span = MagicMock()
        obs._otel_span.get_span_context.return_value.span_id = next(ids)
        obs.trace_id = "trace-" + str(len(client.observations))
        client.observations.append(obs)
        return obs

    client.start_observation.side_effect = _new_observation
    return client
