from __future__ import annotations

import getpass
import json
import os
import re
import socket
import sys
from typing import Any, Dict, Optional


JsonDict = Dict[str, Any]

MAX_TOOL_OUTPUT_CHARS = 10_000
MAX_TITLE_CHARS = 50

FILE_TOOLS = frozenset({"read", "edit", "write"})

# "<description> (@<agent> subagent)"
_SUBAGENT_TITLE_RE = re.compile(r"^(?P<description>.+?)\s*\(@(?P<agent>[^\s()]+)\s+subagent\)\s*$")
_PATH_SEP_RE = re.compile(r"[\\/]")


def parse_subagent_title(title: Optional[str]) -> str:
    """
    Turn a host-generated child session title into a span name.

    ``"Find files (@explore subagent)"`` becomes ``"explore: Find files"``.
    Titles that do not follow that shape are returned unchanged (stripped);
    a missing title becomes ``"subagent"``.
    """
    raw = (title or "").strip()
    if not raw:
        return "subagent"
    m = _SUBAGENT_TITLE_RE.match(raw)
    if not m:
        return raw
    return f"{m.group('agent')}: {m.group('description').strip()}"


def format_tool_name(tool: str, title: Optional[str] = None) -> str:
    if not title:
        return tool
    display = title
    if tool in FILE_TOOLS and _PATH_SEP_RE.search(title):
        display = _PATH_SEP_RE.split(title)[-1] or title
    if len(display) > MAX_TITLE_CHARS:
        display = display[: MAX_TITLE_CHARS - 3] + "..."
    return f"{tool}: {display}"


def truncate_output(output: Any, limit: int = MAX_TOOL_OUTPUT_CHARS) -> Any:
    """Cap tool output at ``limit`` characters.

    Structured output is kept as-is when its JSON form fits; otherwise it is
    replaced by the truncated JSON text.
    """
    if output is None:
        return None
    if isinstance(output, str):
        return output[:limit] if len(output) > limit else output
    text = json.dumps(output, ensure_ascii=False, default=str)
    if len(text) > limit:
        return text[:limit]
    return output


def format_model(model: Any) -> Optional[str]:
    """``{"providerID": "anthropic", "modelID": "x"}`` -> ``"anthropic/x"``."""
    if model is None:
        return None
    if isinstance(model, dict):
        provider = model.get("providerID")
        model_id = model.get("modelID")
        if provider is None and model_id is None:
            return None
        return f"{provider}/{model_id}"
    s = str(model).strip()
    return s or None


def user_text_from_parts(parts: Any) -> str:
    if not isinstance(parts, list):
        return ""
    texts: list[str] = []
    for p in parts:
        if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str):
            texts.append(p["text"])
    return "\n".join(texts)


def project_name_from_worktree(worktree: Optional[str]) -> str:
    segments = [s for s in _PATH_SEP_RE.split(worktree or "") if s]
    return segments[-1] if segments else "unknown"


def join_parts(parts: Optional[Dict[str, str]]) -> str:
    if not parts:
        return ""
    return "\n".join(t for t in parts.values() if t)


def coerce_str(val: Any) -> Optional[str]:
    if isinstance(val, str):
        s = val.strip()
        return s if s else None
    return None


def first_str(*vals: Any) -> Optional[str]:
    for v in vals:
        s = coerce_str(v)
        if s:
            return s
    return None


def as_dict(val: Any) -> JsonDict:
    return val if isinstance(val, dict) else {}


def as_number(val: Any) -> Optional[float]:
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return None
    return val


def system_metadata() -> JsonDict:
    try:
        hostname = socket.gethostname() or "unknown"
    except OSError:
        hostname = os.environ.get("HOSTNAME") or "unknown"
    try:
        username = getpass.getuser()
    except Exception:
        username = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    return {"hostname": hostname, "username": username, "os": sys.platform or "unknown"}

