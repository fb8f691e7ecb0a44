"""
Session event -> span state machine.

One SessionState per live session moves through:

    created (root span open) -> turn open -> idle (turn closed) -> closed

Turns are opened by the chat-message hook and closed by the next chat
message, ``session.idle``, ``session.deleted`` or ``session.error``. LLM spans
are emitted once per completed assistant message; tool spans are emitted by
the tool-execute "after" hook. Both hang off the open turn and are dropped when
no turn is open.

Sub-agent sessions (``session.created`` with a parent id) get their own root
span, parented to the parent's open turn but sharing the parent's trace root.
They never receive ``session.deleted``, so ``session.idle`` closes them.

Nothing in here raises into the host: unknown sessions, missing turns and
malformed payloads are logged and dropped.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.event_types import (
    MESSAGE_PART_UPDATED,
    MESSAGE_UPDATED,
    SESSION_CREATED,
    SESSION_DELETED,
    SESSION_ERROR,
    SESSION_IDLE,
    Event,
)

from .clock import WALL_CLOCK
from .naming import (
    as_dict,
    as_number,
    coerce_str,
    first_str,
    format_model,
    format_tool_name,
    join_parts,
    parse_subagent_title,
    project_name_from_worktree,
    system_metadata,
    truncate_output,
)
from .records import InsertResult, ProcessorStats, SpanRecord, compact, iso_from_ms
from .session_state import SessionRegistry, SessionState
from .span_sink import SpanSink


JsonDict = Dict[str, Any]
LogFn = Callable[[str, Optional[Any]], None]


def _new_uuid() -> str:
    return str(uuid.uuid4())


def error_name_and_message(raw: Any) -> Tuple[str, str]:
    """Pull (name, message) out of a ``session.error`` payload."""
    if isinstance(raw, str) and raw.strip():
        return "UnknownError", raw.strip()
    err = as_dict(raw)
    name = first_str(err.get("name")) or "UnknownError"
    data = as_dict(err.get("data"))
    message = first_str(data.get("message"), err.get("message")) or name
    return name, message


def format_error(name: str, message: str) -> str:
    return f"{message}\n\ntype: {name}"


@dataclass(frozen=True)
class ProcessorConfig:
    project_name: Optional[str] = None
    worktree: Optional[str] = None
    directory: Optional[str] = None
    include_system_metadata: bool = True

    @property
    def display_name(self) -> str:
        return self.project_name or project_name_from_worktree(self.worktree)


class EventProcessor:
    def __init__(
        self,
        sink: SpanSink,
        config: ProcessorConfig,
        *,
        clock: Any = None,
        new_id: Optional[Callable[[], str]] = None,
        log: Optional[LogFn] = None,
    ) -> None:
        self._sink = sink
        self._config = config
        self._clock = clock or WALL_CLOCK
        self._new_id = new_id or _new_uuid
        self._log_fn = log
        self.sessions = SessionRegistry()
        self.stats = ProcessorStats()
        self._handlers: Dict[str, Callable[[Event], None]] = {
            SESSION_CREATED: self._on_session_created,
            MESSAGE_PART_UPDATED: self._on_message_part_updated,
            MESSAGE_UPDATED: self._on_message_updated,
            SESSION_IDLE: self._on_session_idle,
            SESSION_DELETED: self._on_session_deleted,
            SESSION_ERROR: self._on_session_error,
        }

    # ------------------------------------------------------------------
    # plumbing

    def _log(self, msg: str, data: Any = None) -> None:
        if self._log_fn is None:
            return
        try:
            self._log_fn(msg, data)
        except Exception:
            pass

    def _drop(self, msg: str, data: Any = None) -> None:
        self.stats.events_dropped += 1
        self._log(msg, data)

    def _emit(self, record: SpanRecord) -> InsertResult:
        try:
            result = self._sink.insert_span(record)
        except Exception as err:
            result = InsertResult.failed(repr(err))
        if not isinstance(result, InsertResult):
            result = InsertResult.failed("sink returned no result")
        if result.ok:
            self.stats.spans_emitted += 1
        else:
            self.stats.spans_failed += 1
            self.stats.last_error = result.error
            self._log("insert_span failed", {"spanId": record.span_id, "isMerge": record.is_merge, "error": result.error})
        return result

    def _touch(self, state: SessionState) -> int:
        now = self._clock.now()
        state.last_activity = now
        return now

    # ------------------------------------------------------------------
    # public entry points

    def process_event(self, event: Any) -> None:
        if not isinstance(event, Event):
            event = Event.from_dict(event)
        if event is None:
            self._drop("malformed event")
            return
        handler = self._handlers.get(event.type)
        if handler is None:
            self._log(f"unhandled event {event.type}")
            return
        try:
            handler(event)
        except Exception as err:
            self.stats.events_dropped += 1
            self._log("error in event handler", {"type": event.type, "error": repr(err)})

    def process_chat_message(
        self,
        session_id: str,
        user_message: Optional[str],
        model: Any = None,
        agent: Optional[str] = None,
    ) -> None:
        state = self.sessions.get(session_id)
        if state is None:
            self._drop("No state found for session", {"sessionID": session_id})
            return
        now = self._touch(state)

        # No concurrent turns: a new message force-closes the previous one.
        if state.has_open_turn:
            self._close_turn(state, now)

        state.turn_number += 1
        turn_id = self._new_id()
        state.current_turn_span_id = turn_id
        state.current_input = user_message or None
        state.current_output = None

        self._emit(
            SpanRecord(
                id=turn_id,
                span_id=turn_id,
                root_span_id=state.effective_root_span_id,
                span_parents=[state.root_span_id],
                created=iso_from_ms(now),
                input=user_message or None,
                metadata=compact(
                    {
                        "turn_number": state.turn_number,
                        "model": format_model(model),
                        "agent": agent,
                    }
                ),
                metrics={"start": now},
                span_attributes={"name": f"Turn {state.turn_number}", "type": "task"},
            )
        )
        self._log("Created turn span", {"sessionID": session_id, "turnNumber": state.turn_number})

    def process_tool_execute_before(self, session_id: str, call_id: str) -> None:
        state = self.sessions.get(session_id)
        if state is None or not call_id:
            self._drop("tool.execute.before: no state", {"sessionID": session_id, "callID": call_id})
            return
        state.tool_start_times[call_id] = self._touch(state)

    def process_tool_execute_after(
        self,
        session_id: str,
        call_id: str,
        tool: str,
        title: Optional[str],
        output: Any,
        args: Any = None,
    ) -> None:
        state = self.sessions.get(session_id)
        if state is None or not state.has_open_turn:
            if state is not None:
                state.tool_start_times.pop(call_id, None)
                state.tool_call_message_ids.pop(call_id, None)
            self._drop("No state or turn for tool", {"sessionID": session_id, "callID": call_id})
            return
        end = self._touch(state)
        state.tool_call_count += 1

        start = state.tool_start_times.pop(call_id, None)
        if start is None:
            start = end
        message_id = state.tool_call_message_ids.pop(call_id, None)
        reasoning = join_parts(state.llm_reasoning_parts.get(message_id)) if message_id else ""

        self._emit(
            SpanRecord(
                id=self._new_id(),
                span_id=self._new_id(),
                root_span_id=state.effective_root_span_id,
                span_parents=[state.current_turn_span_id],  # type: ignore[list-item]
                created=iso_from_ms(start),
                input=args,
                output=truncate_output(output),
                metadata=compact(
                    {
                        "tool_name": tool,
                        "call_id": call_id,
                        "title": title,
                        "message_id": message_id,
                        "reasoning": reasoning or None,
                    }
                ),
                metrics={"start": start, "end": end},
                span_attributes={"name": format_tool_name(tool, title), "type": "tool"},
            )
        )
        self._log("Created tool span", {"tool": tool, "callID": call_id})

    def evict_idle_sessions(self, max_idle_ms: int) -> int:
        """Close and forget sessions with no activity for ``max_idle_ms``."""
        if max_idle_ms <= 0:
            return 0
        now = self._clock.now()
        evicted = 0
        for session_id in self.sessions.stale(now, max_idle_ms):
            state = self.sessions.get(session_id)
            if state is None:
                continue
            if state.has_open_turn:
                self._close_turn(state, now)
            self._close_root(session_id, state, now, extra_metadata={"evicted": True})
            evicted += 1
        if evicted:
            self._log("Evicted idle sessions", {"count": evicted})
        return evicted

    # ------------------------------------------------------------------
    # span closing

    def _close_turn(self, state: SessionState, now: int, *, error: Optional[str] = None) -> None:
        turn_id = state.current_turn_span_id
        if turn_id is None:
            return
        self._emit(
            SpanRecord(
                id=turn_id,
                span_id=turn_id,
                root_span_id=state.effective_root_span_id,
                output=state.current_output or None,
                error=error,
                metrics={"end": now},
                is_merge=True,
            )
        )
        state.clear_turn()
        self._log("Turn span closed", {"turnNumber": state.turn_number})

    def _close_root(
        self,
        session_id: str,
        state: SessionState,
        now: int,
        *,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        extra_metadata: Optional[JsonDict] = None,
    ) -> None:
        metadata: JsonDict = {
            "total_turns": state.turn_number,
            "total_tool_calls": state.tool_call_count,
            "error_type": error_type,
        }
        if extra_metadata:
            metadata.update(extra_metadata)
        self._emit(
            SpanRecord(
                id=state.root_span_id,
                span_id=state.root_span_id,
                root_span_id=state.effective_root_span_id,
                error=error,
                metadata=compact(metadata),
                metrics={"end": now},
                is_merge=True,
            )
        )
        self.sessions.remove(session_id)
        self._log("Session span closed", {"sessionID": session_id, "error": error_type})

    # ------------------------------------------------------------------
    # event handlers

    def _on_session_created(self, event: Event) -> None:
        session_id = event.session_id
        if not session_id:
            self._drop("No session ID found, skipping trace creation")
            return
        if session_id in self.sessions:
            self._drop("session.created for a live session", {"sessionID": session_id})
            return

        props = event.properties
        info = as_dict(props.get("info"))
        parent_id = first_str(info.get("parentID"), props.get("parentID"))
        now = self._clock.now()
        if parent_id:
            self._start_child_session(session_id, parent_id, info, now)
        else:
            self._start_session(session_id, now)

    def _start_session(self, session_id: str, now: int) -> None:
        root_id = self._new_id()
        self.sessions.add(
            session_id,
            SessionState(root_span_id=root_id, effective_root_span_id=root_id, start_time=now, last_activity=now),
        )
        cfg = self._config
        metadata: JsonDict = {
            "session_id": session_id,
            "workspace": cfg.worktree,
            "directory": cfg.directory,
        }
        if cfg.include_system_metadata:
            metadata.update(system_metadata())
        result = self._emit(
            SpanRecord(
                id=root_id,
                span_id=root_id,
                root_span_id=root_id,
                created=iso_from_ms(now),
                metadata=compact(metadata),
                metrics={"start": now},
                span_attributes={"name": f"OpenCode: {cfg.display_name}", "type": "task"},
            )
        )
        self._log("Created root span", {"rootSpanId": root_id, "success": result.ok})

    def _start_child_session(self, session_id: str, parent_id: str, info: JsonDict, now: int) -> None:
        parent = self.sessions.get(parent_id)
        if parent is None:
            self._drop("Child session without a live parent", {"sessionID": session_id, "parentID": parent_id})
            return
        parent.last_activity = now

        title = parse_subagent_title(coerce_str(info.get("title")))
        root_id = self._new_id()
        parent_turn = parent.current_turn_span_id
        self.sessions.add(
            session_id,
            SessionState(
                root_span_id=root_id,
                effective_root_span_id=parent.effective_root_span_id,
                start_time=now,
                parent_session_id=parent_id,
                parent_turn_span_id=parent_turn,
                subagent_title=title,
                last_activity=now,
            ),
        )
        self._emit(
            SpanRecord(
                id=root_id,
                span_id=root_id,
                root_span_id=parent.effective_root_span_id,
                span_parents=[parent_turn] if parent_turn else None,
                created=iso_from_ms(now),
                metadata={"session_id": session_id, "parent_session_id": parent_id, "subagent": True},
                metrics={"start": now},
                span_attributes={"name": title, "type": "task"},
            )
        )
        self._log("Created subagent span", {"sessionID": session_id, "parentID": parent_id, "title": title})

    def _on_message_part_updated(self, event: Event) -> None:
        props = event.properties
        part = as_dict(props.get("part"))
        session_id = first_str(part.get("sessionID"), props.get("sessionID"))
        if not part or not session_id:
            self._drop("message.part.updated: no sessionID or part")
            return
        state = self.sessions.get(session_id)
        if state is None:
            self._drop("message.part.updated: no state for session", {"sessionID": session_id})
            return
        self._touch(state)

        message_id = coerce_str(part.get("messageID"))
        part_type = part.get("type")
        if part_type == "text":
            self._track_text(state, part, message_id)
        elif part_type == "tool":
            self._track_tool_call(state, part, message_id)
        elif part_type == "reasoning":
            self._track_reasoning(state, part, message_id)

    def _track_text(self, state: SessionState, part: JsonDict, message_id: Optional[str]) -> None:
        text = part.get("text")
        if not isinstance(text, str) or not text:
            return
        if message_id:
            part_id = coerce_str(part.get("id")) or message_id
            state.llm_output_parts.setdefault(message_id, {})[part_id] = text
        # A finished text part is the best guess at the turn's answer so far.
        if as_dict(part.get("time")).get("end") and state.has_open_turn:
            state.current_output = join_parts(state.llm_output_parts.get(message_id)) if message_id else text

    def _track_tool_call(self, state: SessionState, part: JsonDict, message_id: Optional[str]) -> None:
        call_id = coerce_str(part.get("callID"))
        tool = coerce_str(part.get("tool"))
        if not message_id or not call_id:
            return
        state.tool_call_message_ids[call_id] = message_id
        args = as_dict(part.get("state")).get("input")
        if not tool or not isinstance(args, dict):
            return
        tool_call: JsonDict = {
            "id": call_id,
            "type": "function",
            "function": {"name": tool, "arguments": json.dumps(args, ensure_ascii=False, default=str)},
        }
        calls: List[JsonDict] = state.llm_tool_calls.setdefault(message_id, [])
        for i, existing in enumerate(calls):
            if existing.get("id") == call_id:
                calls[i] = tool_call
                break
        else:
            calls.append(tool_call)

    def _track_reasoning(self, state: SessionState, part: JsonDict, message_id: Optional[str]) -> None:
        text = part.get("text")
        if not message_id or not isinstance(text, str) or not text:
            return
        part_id = coerce_str(part.get("id")) or message_id
        state.llm_reasoning_parts.setdefault(message_id, {})[part_id] = text

    def _on_message_updated(self, event: Event) -> None:
        info = as_dict(event.properties.get("info"))
        if not info:
            self._drop("message.updated: no info in props")
            return
        if info.get("role") != "assistant":
            self._log("message.updated: skipping non-assistant message", {"role": info.get("role")})
            return

        session_id = coerce_str(info.get("sessionID"))
        message_id = coerce_str(info.get("id"))
        if not session_id or not message_id:
            self._drop("message.updated: missing sessionID or messageId")
            return
        state = self.sessions.get(session_id)
        if state is None:
            self._drop("message.updated: no state for session", {"sessionID": session_id})
            return
        self._touch(state)

        timing = as_dict(info.get("time"))
        completed = as_number(timing.get("completed"))
        if not completed:
            self._log("message.updated: message not completed yet", {"messageId": message_id})
            return
        if message_id in state.processed_llm_messages:
            self._log("message.updated: already processed", {"messageId": message_id})
            return
        turn_id = state.current_turn_span_id
        if turn_id is None:
            self._drop("message.updated: no current turn span", {"messageId": message_id})
            return
        state.processed_llm_messages.add(message_id)

        tokens = as_dict(info.get("tokens"))
        input_tokens = int(as_number(tokens.get("input")) or 0)
        output_tokens = int(as_number(tokens.get("output")) or 0)
        reasoning_tokens = int(as_number(tokens.get("reasoning")) or 0)
        total_tokens = input_tokens + output_tokens + reasoning_tokens

        provider = coerce_str(info.get("providerID")) or "unknown"
        model_id = coerce_str(info.get("modelID")) or "unknown"
        model_name = f"{provider}/{model_id}"

        assistant: JsonDict = {"role": "assistant", "content": join_parts(state.llm_output_parts.get(message_id))}
        tool_calls = state.llm_tool_calls.get(message_id)
        if tool_calls:
            assistant["tool_calls"] = [dict(tc) for tc in tool_calls]
        reasoning = state.llm_reasoning_parts.get(message_id)
        if reasoning:
            assistant["reasoning"] = [{"id": pid, "content": text} for pid, text in reasoning.items()]

        created = as_number(timing.get("created"))
        start = created if created is not None else completed
        span_id = self._new_id()
        self._emit(
            SpanRecord(
                id=span_id,
                span_id=span_id,
                root_span_id=state.effective_root_span_id,
                span_parents=[turn_id],
                created=iso_from_ms(start),
                input=[{"role": "user", "content": state.current_input}] if state.current_input else None,
                output=[assistant],
                metadata=compact(
                    {
                        "model": model_name,
                        "provider": provider,
                        "message_id": message_id,
                        "reasoning_tokens": reasoning_tokens or None,
                        "cost": as_number(info.get("cost")),
                    }
                ),
                metrics={
                    "start": start,
                    "end": completed,
                    "prompt_tokens": input_tokens,
                    "completion_tokens": output_tokens,
                    "tokens": total_tokens,
                },
                span_attributes={"name": model_name, "type": "llm"},
            )
        )
        self._log("Created LLM span", {"messageId": message_id, "model": model_name, "tokens": total_tokens})

    def _on_session_idle(self, event: Event) -> None:
        session_id = event.session_id
        state = self.sessions.get(session_id)
        if state is None or session_id is None:
            self._drop("session.idle: no state for session", {"sessionID": session_id})
            return
        now = self._touch(state)
        if state.has_open_turn:
            self._close_turn(state, now)
        # Sub-agent sessions never get session.deleted; idle is their end.
        if state.is_child:
            self._close_root(session_id, state, now)

    def _on_session_deleted(self, event: Event) -> None:
        session_id = event.session_id
        state = self.sessions.get(session_id)
        if state is None or session_id is None:
            self._drop("session.deleted: no state for session", {"sessionID": session_id})
            return
        now = self._clock.now()
        if state.has_open_turn:
            self._close_turn(state, now)
        self._close_root(session_id, state, now)

    def _on_session_error(self, event: Event) -> None:
        session_id = event.session_id
        state = self.sessions.get(session_id)
        if state is None or session_id is None:
            self._drop("session.error: no state for session", {"sessionID": session_id})
            return
        name, message = error_name_and_message(event.properties.get("error"))
        error_text = format_error(name, message)
        now = self._clock.now()
        if state.has_open_turn:
            self._close_turn(state, now, error=error_text)
        self._close_root(session_id, state, now, error=error_text, error_type=name)
