from __future__ import annotations

import pytest

from builders import Run, new_run


@pytest.fixture
def run() -> Run:
    return new_run()


@pytest.fixture
def log_lines() -> list:
    return []


@pytest.fixture
def logged_run(log_lines: list) -> Run:
    return new_run(log=lambda msg, data=None: log_lines.append((msg, data)))
