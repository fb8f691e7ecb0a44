from __future__ import annotations

from typing import Any, Dict, Optional

from shared.event_types import (
    KIND_CHAT_MESSAGE,
    KIND_EVENT,
    KIND_TOOL_AFTER,
    KIND_TOOL_BEFORE,
    Envelope,
    Event,
)

from .event_processor import EventProcessor
from .naming import as_dict, first_str, user_text_from_parts


JsonDict = Dict[str, Any]


def _session_id(env: Envelope) -> Optional[str]:
    return first_str(
        env.payload.get("sessionID"),
        env.payload.get("sessionId"),
        env.context.get("sessionID"),
        env.context.get("sessionId"),
    )


def _call_id(env: Envelope) -> Optional[str]:
    return first_str(env.payload.get("callID"), env.payload.get("callId"), env.context.get("callID"))


class EnvelopeRouter:
    """Feeds IPC envelopes written by the host plugin into an EventProcessor.

    Envelope kinds:
    - ``event``: payload is a bus event ``{"type", "properties"}``
    - ``hook.chat.message``: ``{sessionID, parts | text, model?, agent?}``
    - ``hook.tool.execute.before``: ``{sessionID, callID, tool}``
    - ``hook.tool.execute.after``: ``{sessionID, callID, tool, title, output, args | metadata}``
    """

    def __init__(self, processor: EventProcessor) -> None:
        self.processor = processor
        self.ignored = 0

    def handle(self, raw: Any) -> bool:
        """Route one envelope; returns False when nothing was done with it."""
        env = raw if isinstance(raw, Envelope) else Envelope.from_dict(raw)
        if env is None:
            self.ignored += 1
            return False

        if env.kind == KIND_EVENT:
            event = Event.from_dict(env.payload)
            if event is None:
                self.ignored += 1
                return False
            self.processor.process_event(event)
            return True

        if env.kind not in (KIND_CHAT_MESSAGE, KIND_TOOL_BEFORE, KIND_TOOL_AFTER):
            self.ignored += 1
            return False

        session_id = _session_id(env)
        if not session_id:
            self.ignored += 1
            return False
        payload = env.payload

        if env.kind == KIND_CHAT_MESSAGE:
            text = payload.get("text")
            user_message = text if isinstance(text, str) else user_text_from_parts(payload.get("parts"))
            self.processor.process_chat_message(
                session_id,
                user_message,
                model=payload.get("model"),
                agent=first_str(payload.get("agent")),
            )
            return True

        call_id = _call_id(env)
        if not call_id:
            self.ignored += 1
            return False

        if env.kind == KIND_TOOL_BEFORE:
            self.processor.process_tool_execute_before(session_id, call_id)
            return True

        args = payload.get("args")
        if args is None:
            args = as_dict(payload.get("metadata")) or None
        output = payload.get("output")
        self.processor.process_tool_execute_after(
            session_id,
            call_id,
            first_str(payload.get("tool")) or "unknown_tool",
            first_str(payload.get("title")),
            output if output is not None else "",
            args,
        )
        return True
