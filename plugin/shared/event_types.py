from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


JsonDict = Dict[str, Any]

SESSION_CREATED = "session.created"
SESSION_IDLE = "session.idle"
SESSION_DELETED = "session.deleted"
SESSION_ERROR = "session.error"
MESSAGE_UPDATED = "message.updated"
MESSAGE_PART_UPDATED = "message.part.updated"

EVENT_TYPES = frozenset(
    {SESSION_CREATED, SESSION_IDLE, SESSION_DELETED, SESSION_ERROR, MESSAGE_UPDATED, MESSAGE_PART_UPDATED}
)

# Envelope kinds written by the host plugin to the IPC file.
KIND_EVENT = "event"
KIND_CHAT_MESSAGE = "hook.chat.message"
KIND_TOOL_BEFORE = "hook.tool.execute.before"
KIND_TOOL_AFTER = "hook.tool.execute.after"


@dataclass(frozen=True)
class Event:
    """A host bus event: ``{"type": "...", "properties": {...}}``."""

    type: str
    properties: JsonDict = field(default_factory=dict)

    @property
    def session_id(self) -> Optional[str]:
        props = self.properties
        info = props.get("info") if isinstance(props.get("info"), dict) else {}
        for candidate in (props.get("sessionID"), info.get("id"), props.get("id")):
            if isinstance(candidate, str) and candidate:
                return candidate
        return None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["Event"]:
        if not isinstance(raw, dict):
            return None
        etype = raw.get("type")
        if not isinstance(etype, str) or not etype:
            return None
        props = raw.get("properties")
        return cls(type=etype, properties=props if isinstance(props, dict) else {})


@dataclass(frozen=True)
class Envelope:
    kind: str
    ts: Optional[int] = None
    source: Optional[str] = None
    context: JsonDict = field(default_factory=dict)
    payload: JsonDict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["Envelope"]:
        if not isinstance(raw, dict):
            return None
        kind = raw.get("kind")
        if not isinstance(kind, str) or not kind.strip():
            return None
        ts = raw.get("ts")
        return cls(
            kind=kind.strip(),
            ts=int(ts) if isinstance(ts, (int, float)) and not isinstance(ts, bool) else None,
            source=raw.get("source") if isinstance(raw.get("source"), str) else None,
            context=raw.get("context") if isinstance(raw.get("context"), dict) else {},
            payload=raw.get("payload") if isinstance(raw.get("payload"), dict) else {},
        )
