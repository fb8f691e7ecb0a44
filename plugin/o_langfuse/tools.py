"""
Read/write helpers against the Langfuse project the tracer reports to.

Each operation returns a human-readable string; API failures come back as
``"Error ...: ..."`` text instead of raising, so callers can show the result
as-is.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from langfuse import Langfuse


JsonDict = Dict[str, Any]

DEFAULT_TRACE_LIMIT = 10
MANUAL_LOG_NAME = "Manual Log"


def _jsonable(item: Any) -> Any:
    # Langfuse API models are pydantic models exposing dict().
    to_dict = getattr(item, "dict", None)
    if callable(to_dict):
        return to_dict()
    return item


def _parse_json_object(raw: Optional[str], field_name: str) -> Optional[JsonDict]:
    if not raw:
        return None
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a JSON object")
    return value


def _parse_tags(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    tags = [t.strip() for t in raw.split(",") if t.strip()]
    return tags or None


class LangfuseTools:
    def __init__(self, client: Any) -> None:
        self._client = client

    @staticmethod
    def create(*, public_key: Optional[str], secret_key: Optional[str], base_url: str) -> Optional["LangfuseTools"]:
        if not public_key or not secret_key:
            return None
        return LangfuseTools(Langfuse(public_key=public_key, secret_key=secret_key, base_url=base_url))

    def query_traces(
        self,
        *,
        limit: int = DEFAULT_TRACE_LIMIT,
        name: Optional[str] = None,
        session_id: Optional[str] = None,
        tags: Optional[str] = None,
    ) -> str:
        """Most recent traces, newest first, as pretty-printed JSON."""
        try:
            result = self._client.api.trace.list(
                limit=max(1, int(limit)),
                name=name,
                session_id=session_id,
                tags=_parse_tags(tags),
            )
        except Exception as err:
            return f"Error querying traces: {err}"
        rows = [_jsonable(t) for t in (getattr(result, "data", None) or [])]
        if not rows:
            return "No traces found."
        return json.dumps(rows, indent=2, ensure_ascii=False, default=str)

    def list_projects(self) -> str:
        try:
            result = self._client.api.projects.get()
        except Exception as err:
            return f"Error listing projects: {err}"
        projects = getattr(result, "data", None) or []
        if not projects:
            return "No projects found."
        return "\n".join(f"- {p.name} ({p.id})" for p in projects)

    def log_data(
        self,
        *,
        input: Optional[str] = None,
        output: Optional[str] = None,
        expected: Optional[str] = None,
        scores: Optional[str] = None,
        metadata: Optional[str] = None,
        tags: Optional[str] = None,
    ) -> str:
        """
        Record a standalone "Manual Log" trace.

        ``scores`` and ``metadata`` are JSON objects given as text; scores become
        trace-level Langfuse scores. ``tags`` is a comma-separated list.
        """
        try:
            parsed_scores = _parse_json_object(scores, "scores")
        except ValueError:
            return "Error: scores must be valid JSON"
        try:
            parsed_metadata = _parse_json_object(metadata, "metadata") or {}
        except ValueError:
            return "Error: metadata must be valid JSON"
        if expected:
            parsed_metadata["expected"] = expected

        try:
            span = self._client.start_observation(
                name=MANUAL_LOG_NAME,
                as_type="span",
                input=input or None,
                output=output or None,
                metadata=parsed_metadata or None,
            )
            span.update_trace(name=MANUAL_LOG_NAME, tags=_parse_tags(tags), metadata=parsed_metadata or None)
            trace_id = span.trace_id
            for score_name, value in (parsed_scores or {}).items():
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    continue
                self._client.create_score(name=str(score_name), value=float(value), trace_id=trace_id)
            span.end()
            self._client.flush()
        except Exception as err:
            return f"Error logging data: {err}"
        return f"Successfully logged data with ID: {trace_id}"
