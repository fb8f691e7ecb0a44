from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional


JsonDict = Dict[str, Any]


@dataclass
class SessionState:
    root_span_id: str
    # Trace root the session's spans attach to; an ancestor's root for sub-agents.
    effective_root_span_id: str
    start_time: int
    current_turn_span_id: Optional[str] = None
    turn_number: int = 0
    tool_call_count: int = 0
    current_input: Optional[str] = None
    current_output: Optional[str] = None
    # messageID -> partID -> latest text of that part
    llm_output_parts: Dict[str, Dict[str, str]] = field(default_factory=dict)
    llm_reasoning_parts: Dict[str, Dict[str, str]] = field(default_factory=dict)
    # messageID -> tool calls in OpenAI "tool_calls" shape, ordered by first sighting
    llm_tool_calls: Dict[str, List[JsonDict]] = field(default_factory=dict)
    processed_llm_messages: set[str] = field(default_factory=set)
    tool_start_times: Dict[str, int] = field(default_factory=dict)  # callID -> ms
    tool_call_message_ids: Dict[str, str] = field(default_factory=dict)  # callID -> messageID
    parent_session_id: Optional[str] = None
    parent_turn_span_id: Optional[str] = None
    subagent_title: Optional[str] = None
    last_activity: int = 0

    @property
    def is_child(self) -> bool:
        return self.parent_session_id is not None

    @property
    def has_open_turn(self) -> bool:
        return self.current_turn_span_id is not None

    def clear_turn(self) -> None:
        self.current_turn_span_id = None
        self.current_input = None
        self.current_output = None


class SessionRegistry:
    """Live sessions of one processor, keyed by session id."""

    def __init__(self) -> None:
        self._states: Dict[str, SessionState] = {}

    def get(self, session_id: Optional[str]) -> Optional[SessionState]:
        if not session_id:
            return None
        return self._states.get(session_id)

    def add(self, session_id: str, state: SessionState) -> None:
        self._states[session_id] = state

    def remove(self, session_id: str) -> Optional[SessionState]:
        return self._states.pop(session_id, None)

    def ids(self) -> List[str]:
        return list(self._states.keys())

    def stale(self, now_ms: int, max_idle_ms: int) -> List[str]:
        return [sid for sid, st in self._states.items() if now_ms - st.last_activity >= max_idle_ms]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._states.keys()))
