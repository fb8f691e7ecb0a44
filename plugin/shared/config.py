from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


DEFAULT_BASE_URL = "https://cloud.langfuse.com"
DEFAULT_PROJECT = "opencode"


def parse_boolean_env(value: Optional[str]) -> bool:
    """Only "true" and "1" (any case) count as true."""
    if not value:
        return False
    return value.strip().lower() in ("true", "1")


def _parse_dotenv(path: Path) -> Dict[str, str]:
    if not path.exists() or not path.is_file():
        return {}
    out: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        val = val.strip().strip('"').strip("'")
        if key:
            out[key] = val
    return out


def _home_opencode_dir() -> Path:
    return Path.home() / ".config" / "opencode"


def resolve_config_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    raw = (env.get("OPENCODE_CONFIG_DIR") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return _home_opencode_dir()


def _load_host_section(config_dir: Path) -> Dict[str, Any]:
    path = config_dir / "opencode.json"
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    section = data.get("langfuse") if isinstance(data, dict) else None
    return section if isinstance(section, dict) else {}


@dataclass(frozen=True)
class LangfuseSettings:
    public_key: Optional[str]
    secret_key: Optional[str]
    base_url: str


@dataclass(frozen=True)
class TracingSettings:
    project_name: str
    enabled: bool
    debug: bool
    idle_timeout_s: float


@dataclass(frozen=True)
class Settings:
    plugin_dir: Path
    config_dir: Path
    ipc_file: Optional[Path]
    langfuse: LangfuseSettings
    tracing: TracingSettings


class _Layers:
    """Later layers win: defaults, opencode.json section, plugin .env, process env."""

    def __init__(self, host: Mapping[str, Any], dotenv: Mapping[str, str], env: Mapping[str, str]) -> None:
        self._host = host
        self._dotenv = dotenv
        self._env = env

    def text(self, env_key: str, host_key: str, default: Optional[str] = None) -> Optional[str]:
        for val in (self._env.get(env_key), self._dotenv.get(env_key)):
            if val is not None and val.strip():
                return val.strip()
        host_val = self._host.get(host_key)
        if isinstance(host_val, str) and host_val.strip():
            return host_val.strip()
        return default

    def flag(self, env_key: str, host_key: str, default: bool = False) -> bool:
        for val in (self._env.get(env_key), self._dotenv.get(env_key)):
            if val:
                return parse_boolean_env(val)
        host_val = self._host.get(host_key)
        if isinstance(host_val, bool):
            return host_val
        return default

    def number(self, env_key: str, host_key: str, default: float = 0.0) -> float:
        raw: Any = self.text(env_key, host_key)
        if raw is None:
            raw = self._host.get(host_key)
        try:
            val = float(raw) if raw is not None else default
        except (TypeError, ValueError):
            return default
        return val if val >= 0 else default


def load_settings(plugin_dir: Path, env: Optional[Mapping[str, str]] = None) -> Settings:
    plugin_dir = plugin_dir.resolve()
    env = os.environ if env is None else env
    config_dir = resolve_config_dir(env).resolve()
    ipc_raw = (env.get("O_TRACE_IPC_FILE") or "").strip()
    ipc_file = Path(ipc_raw).expanduser().resolve() if ipc_raw else None

    layers = _Layers(_load_host_section(config_dir), _parse_dotenv(plugin_dir / ".env"), env)

    base_url = (layers.text("LANGFUSE_BASE_URL", "base_url", DEFAULT_BASE_URL) or DEFAULT_BASE_URL).rstrip("/")

    return Settings(
        plugin_dir=plugin_dir,
        config_dir=config_dir,
        ipc_file=ipc_file,
        langfuse=LangfuseSettings(
            public_key=layers.text("LANGFUSE_PUBLIC_KEY", "public_key"),
            secret_key=layers.text("LANGFUSE_SECRET_KEY", "secret_key"),
            base_url=base_url,
        ),
        tracing=TracingSettings(
            project_name=layers.text("OPENCODE_TRACE_PROJECT", "project", DEFAULT_PROJECT) or DEFAULT_PROJECT,
            enabled=layers.flag("TRACE_TO_LANGFUSE", "trace_to_langfuse"),
            debug=layers.flag("OPENCODE_TRACE_DEBUG", "debug"),
            idle_timeout_s=layers.number("OPENCODE_TRACE_IDLE_TIMEOUT_S", "idle_timeout_s"),
        ),
    )
