from __future__ import annotations

import json
import os
from pathlib import Path

from shared.ipc import JsonlTail, load_tail_state


def _append(path: Path, *lines: str) -> None:
    with path.open("a", encoding="utf-8") as f:
        for line in lines:
            f.write(line)


def test_missing_file_polls_empty(tmp_path):
    assert JsonlTail(tmp_path / "nope.jsonl").poll() == []


def test_start_at_end_skips_backlog(tmp_path):
    path = tmp_path / "ipc.jsonl"
    _append(path, json.dumps({"kind": "old"}) + "\n")
    tail = JsonlTail(path)
    assert tail.poll() == []
    _append(path, json.dumps({"kind": "new"}) + "\n")
    assert tail.poll() == [{"kind": "new"}]


def test_reads_from_start_when_asked(tmp_path):
    path = tmp_path / "ipc.jsonl"
    _append(path, '{"a": 1}\n', '{"a": 2}\n')
    assert JsonlTail(path, start_at_end=False).poll() == [{"a": 1}, {"a": 2}]


def test_partial_line_waits_for_newline(tmp_path):
    path = tmp_path / "ipc.jsonl"
    path.touch()
    tail = JsonlTail(path, start_at_end=False)
    _append(path, '{"a": 1}\n{"a"')
    assert tail.poll() == [{"a": 1}]
    _append(path, ': 2}\n')
    assert tail.poll() == [{"a": 2}]


def test_invalid_lines_are_skipped(tmp_path):
    path = tmp_path / "ipc.jsonl"
    _append(path, "not json\n", "[1, 2]\n", "\n", '{"ok": true}\n')
    tail = JsonlTail(path, start_at_end=False)
    assert tail.poll() == [{"ok": True}]
    assert tail.skipped_lines == 2


def test_truncation_restarts_from_beginning(tmp_path):
    path = tmp_path / "ipc.jsonl"
    _append(path, '{"a": 1}\n', '{"a": 2}\n')
    tail = JsonlTail(path, start_at_end=False)
    assert len(tail.poll()) == 2
    path.write_text('{"b": 1}\n', encoding="utf-8")
    assert tail.poll() == [{"b": 1}]


def test_rotation_restarts_from_beginning(tmp_path):
    path = tmp_path / "ipc.jsonl"
    _append(path, '{"a": 1}\n')
    tail = JsonlTail(path, start_at_end=False)
    tail.poll()
    rotated = tmp_path / "ipc.jsonl.1"
    os.replace(path, rotated)
    _append(path, '{"c": 1}\n', '{"c": 2}\n')
    assert tail.poll() == [{"c": 1}, {"c": 2}]


def test_offset_persists_across_instances(tmp_path):
    path = tmp_path / "ipc.jsonl"
    state_file = tmp_path / "ipc.tailstate.json"
    _append(path, '{"n": 1}\n')
    assert JsonlTail(path, state_file=state_file, start_at_end=False).poll() == [{"n": 1}]

    state = load_tail_state(state_file)
    assert state.offset == path.stat().st_size
    assert state.inode == path.stat().st_ino

    _append(path, '{"n": 2}\n')
    assert JsonlTail(path, state_file=state_file, start_at_end=False).poll() == [{"n": 2}]


def test_corrupt_state_file_starts_fresh(tmp_path):
    path = tmp_path / "ipc.jsonl"
    state_file = tmp_path / "state.json"
    state_file.write_text("garbage", encoding="utf-8")
    _append(path, '{"n": 1}\n')
    assert JsonlTail(path, state_file=state_file, start_at_end=False).poll() == [{"n": 1}]


def test_follow_yields_appended_objects(tmp_path):
    path = tmp_path / "ipc.jsonl"
    _append(path, '{"n": 1}\n', '{"n": 2}\n')
    stream = JsonlTail(path, start_at_end=False).follow(poll_interval_s=0.01)
    assert next(stream) == {"n": 1}
    assert next(stream) == {"n": 2}
