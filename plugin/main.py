from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Optional

from o_langfuse import LangfuseSpanSink, LangfuseTools
from o_trace import EnvelopeRouter, EventProcessor, ProcessorConfig
from shared.config import Settings, load_settings
from shared.ipc import JsonlTail


def _resolve_plugin_dir() -> Path:
    raw = (os.environ.get("O_TRACE_PLUGIN_DIR") or "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return Path(__file__).parent.resolve()


def _stderr_log(msg: str, data: Any = None) -> None:
    if data is None:
        print(f"[o-trace] {msg}", file=sys.stderr)
    else:
        print(f"[o-trace] {msg} {data!r}", file=sys.stderr)


class _StopFlag:
    def __init__(self) -> None:
        self.value = False


def _build_sink(settings: Settings) -> Optional[LangfuseSpanSink]:
    if not settings.tracing.enabled:
        print("[o-trace] tracing disabled (TRACE_TO_LANGFUSE is not set)", file=sys.stderr)
        return None
    sink = LangfuseSpanSink.create(
        public_key=settings.langfuse.public_key,
        secret_key=settings.langfuse.secret_key,
        base_url=settings.langfuse.base_url,
    )
    if sink is None:
        pk_set = bool(settings.langfuse.public_key)
        sk_set = bool(settings.langfuse.secret_key)
        print(
            "[o-trace] Langfuse disabled "
            f"(public_key_set={pk_set} secret_key_set={sk_set} base_url={settings.langfuse.base_url})",
            file=sys.stderr,
        )
        return None
    print(f"[o-trace] Langfuse enabled (base_url={settings.langfuse.base_url})", file=sys.stderr)
    return sink


def _run_tool(args: argparse.Namespace, settings: Settings) -> int:
    tools = LangfuseTools.create(
        public_key=settings.langfuse.public_key,
        secret_key=settings.langfuse.secret_key,
        base_url=settings.langfuse.base_url,
    )
    if tools is None:
        print("[o-trace] Langfuse credentials are not configured", file=sys.stderr)
        return 1

    if args.command == "query-traces":
        out = tools.query_traces(limit=args.limit, name=args.name, session_id=args.session_id, tags=args.tags)
    elif args.command == "list-projects":
        out = tools.list_projects()
    else:
        out = tools.log_data(
            input=args.input,
            output=args.output,
            expected=args.expected,
            scores=args.scores,
            metadata=args.metadata,
            tags=args.tags,
        )
    print(out)
    return 1 if out.startswith("Error") else 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(add_help=True)
    parser.add_argument("--ipc", help="Path to JSONL IPC file (defaults to $O_TRACE_IPC_FILE)")
    parser.add_argument("--worktree", help="Project worktree reported on root spans")
    parser.add_argument("--directory", help="Working directory reported on root spans")
    sub = parser.add_subparsers(dest="command")

    q = sub.add_parser("query-traces", help="Print recent Langfuse traces as JSON")
    q.add_argument("--limit", type=int, default=10)
    q.add_argument("--name")
    q.add_argument("--session-id")
    q.add_argument("--tags", help="Comma-separated tags")

    sub.add_parser("list-projects", help="List the projects visible to the configured keys")

    lg = sub.add_parser("log", help="Record a standalone 'Manual Log' trace")
    lg.add_argument("--input")
    lg.add_argument("--output")
    lg.add_argument("--expected")
    lg.add_argument("--scores", help='JSON object, e.g. {"accuracy": 0.95}')
    lg.add_argument("--metadata", help="JSON object of extra metadata")
    lg.add_argument("--tags", help="Comma-separated tags")

    args = parser.parse_args(argv)

    settings = load_settings(_resolve_plugin_dir())

    if args.command:
        return _run_tool(args, settings)

    ipc_file = Path(args.ipc).expanduser().resolve() if args.ipc else settings.ipc_file
    if ipc_file is None:
        parser.error("--ipc is required when O_TRACE_IPC_FILE is not set")

    sink = _build_sink(settings)
    if sink is None:
        return 0

    ipc_file.parent.mkdir(parents=True, exist_ok=True)
    ipc_file.open("a", encoding="utf-8").close()

    directory = args.directory or os.getcwd()
    processor = EventProcessor(
        sink,
        ProcessorConfig(
            project_name=settings.tracing.project_name,
            worktree=args.worktree or directory,
            directory=directory,
        ),
        log=_stderr_log if settings.tracing.debug else None,
    )
    router = EnvelopeRouter(processor)
    tail = JsonlTail(ipc_file, start_at_end=False, state_file=ipc_file.with_suffix(".tailstate.json"))

    stop = _StopFlag()

    def _handle_sig(_signum: int, _frame: object) -> None:
        stop.value = True

    signal.signal(signal.SIGTERM, _handle_sig)
    signal.signal(signal.SIGINT, _handle_sig)

    flush_interval_s = 1.0
    idle_timeout_ms = int(settings.tracing.idle_timeout_s * 1000)
    last_flush = time.time()
    last_router_error = 0.0

    while not stop.value:
        try:
            batch = tail.poll()
        except OSError as err:
            _stderr_log("IPC read error", repr(err))
            batch = []

        for envelope in batch:
            if stop.value:
                break
            try:
                router.handle(envelope)
            except Exception as err:
                # At most once per 10s; a bad envelope never stops the loop.
                now = time.time()
                if now - last_router_error >= 10.0:
                    print(f"[o-trace] router error: {err!r}", file=sys.stderr)
                    last_router_error = now

        now = time.time()
        if now - last_flush >= flush_interval_s:
            if idle_timeout_ms > 0:
                processor.evict_idle_sessions(idle_timeout_ms)
            sink.flush()
            last_flush = now

        if not batch:
            time.sleep(0.2)

    sink.flush()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
