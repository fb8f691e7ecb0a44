from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


JsonDict = Dict[str, Any]


@dataclass
class TailState:
    offset: int = 0
    inode: Optional[int] = None


def _stat_inode(path: Path) -> Optional[int]:
    try:
        return path.stat().st_ino
    except OSError:
        return None


def load_tail_state(state_file: Path) -> Optional[TailState]:
    try:
        raw = json.loads(state_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(raw, dict):
        return None
    s = TailState()
    offset = raw.get("offset")
    inode = raw.get("inode")
    if isinstance(offset, int) and offset >= 0:
        s.offset = offset
    if isinstance(inode, int):
        s.inode = inode
    return s


def save_tail_state(state_file: Path, state: TailState) -> None:
    try:
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state_file.write_text(json.dumps({"offset": state.offset, "inode": state.inode}), encoding="utf-8")
    except OSError:
        pass


class JsonlTail:
    """
    Follows a JSONL file that the host plugin appends envelopes to.

    - ``poll()`` returns the JSON objects from complete lines appended since
      the previous call; a trailing partial line is left for the next poll.
    - Truncation (size below offset) and rotation (inode change) restart
      from the beginning of the file.
    - Lines that are not JSON objects are skipped.
    """

    def __init__(self, path: Path, *, state_file: Optional[Path] = None, start_at_end: bool = True) -> None:
        self.path = path
        self.state_file = state_file
        self.start_at_end = start_at_end
        self.state = (load_tail_state(state_file) if state_file else None) or TailState()
        self.skipped_lines = 0

    def _sync_position(self) -> None:
        inode = _stat_inode(self.path)
        if self.state.inode is None:
            self.state.inode = inode
            # Don't replay the backlog on first start unless asked to.
            if self.start_at_end and self.state.offset == 0:
                self.state.offset = self.path.stat().st_size
        elif inode is not None and inode != self.state.inode:
            self.state.inode = inode
            self.state.offset = 0
        if self.path.stat().st_size < self.state.offset:
            self.state.offset = 0

    def poll(self) -> List[JsonDict]:
        if not self.path.exists():
            return []
        self._sync_position()

        out: List[JsonDict] = []
        # Binary mode + readline() so offsets are byte positions.
        with self.path.open("rb") as f:
            f.seek(self.state.offset)
            while True:
                line = f.readline()
                if not line:
                    break
                if not line.endswith(b"\n"):
                    break
                self.state.offset = f.tell()
                raw = line.decode("utf-8", errors="replace").strip()
                if not raw:
                    continue
                try:
                    obj = json.loads(raw)
                except ValueError:
                    self.skipped_lines += 1
                    continue
                if isinstance(obj, dict):
                    out.append(obj)
                else:
                    self.skipped_lines += 1

        if self.state_file:
            save_tail_state(self.state_file, self.state)
        return out

    def follow(self, *, poll_interval_s: float = 0.2) -> Iterator[JsonDict]:
        while True:
            try:
                batch = self.poll()
            except OSError:
                batch = []
            yield from batch
            if not batch:
                time.sleep(poll_interval_s)
