from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

import main
import o_langfuse.tools as tools_module
from builders import fake_langfuse_client
from o_langfuse import LangfuseTools


class _Trace:
    def __init__(self, **fields):
        self._fields = fields

    def dict(self):
        return dict(self._fields)


@pytest.fixture
def client():
    c = fake_langfuse_client()
    c.api = MagicMock()
    return c


def test_query_traces_prints_json(client):
    client.api.trace.list.return_value = SimpleNamespace(
        data=[_Trace(id="t1", name="OpenCode: p", sessionId="ses_1"), _Trace(id="t2", name="Manual Log")]
    )

    out = LangfuseTools(client).query_traces(limit=5, session_id="ses_1", tags="a, b,")

    assert json.loads(out) == [
        {"id": "t1", "name": "OpenCode: p", "sessionId": "ses_1"},
        {"id": "t2", "name": "Manual Log"},
    ]
    client.api.trace.list.assert_called_once_with(limit=5, name=None, session_id="ses_1", tags=["a", "b"])


def test_query_traces_empty_and_error(client):
    client.api.trace.list.return_value = SimpleNamespace(data=[])
    assert LangfuseTools(client).query_traces() == "No traces found."

    client.api.trace.list.side_effect = RuntimeError("403")
    assert LangfuseTools(client).query_traces() == "Error querying traces: 403"


def test_list_projects(client):
    client.api.projects.get.return_value = SimpleNamespace(
        data=[SimpleNamespace(id="p1", name="opencode"), SimpleNamespace(id="p2", name="other")]
    )
    assert LangfuseTools(client).list_projects() == "- opencode (p1)\n- other (p2)"

    client.api.projects.get.return_value = SimpleNamespace(data=[])
    assert LangfuseTools(client).list_projects() == "No projects found."


def test_log_data_creates_manual_trace_with_scores(client):
    out = LangfuseTools(client).log_data(
        input="question",
        output="answer",
        expected="right answer",
        scores='{"accuracy": 0.95, "label": "x", "relevance": 1}',
        metadata='{"task_type": "code_review"}',
        tags="review, manual",
    )

    span = client.observations[0]
    assert out == f"Successfully logged data with ID: {span.trace_id}"
    kwargs = client.start_observation.call_args.kwargs
    assert kwargs["name"] == "Manual Log"
    assert kwargs["as_type"] == "span"
    assert kwargs["input"] == "question"
    assert kwargs["output"] == "answer"
    assert kwargs["metadata"] == {"task_type": "code_review", "expected": "right answer"}
    span.update_trace.assert_called_once_with(
        name="Manual Log", tags=["review", "manual"], metadata={"task_type": "code_review", "expected": "right answer"}
    )
    scored = {c.kwargs["name"]: c.kwargs["value"] for c in client.create_score.call_args_list}
    assert scored == {"accuracy": 0.95, "relevance": 1.0}
    assert all(c.kwargs["trace_id"] == span.trace_id for c in client.create_score.call_args_list)
    span.end.assert_called_once()
    client.flush.assert_called_once()


@pytest.mark.parametrize(
    "kwargs,expected",
    [
        ({"scores": "{not json"}, "Error: scores must be valid JSON"),
        ({"scores": "[1, 2]"}, "Error: scores must be valid JSON"),
        ({"metadata": "nope"}, "Error: metadata must be valid JSON"),
    ],
)
def test_log_data_rejects_bad_json(client, kwargs, expected):
    assert LangfuseTools(client).log_data(**kwargs) == expected
    client.start_observation.assert_not_called()


def test_log_data_reports_client_errors(client):
    client.start_observation.side_effect = RuntimeError("network down")
    assert LangfuseTools(client).log_data(input="x") == "Error logging data: network down"


def test_create_requires_both_keys(monkeypatch):
    factory = MagicMock(name="LangfuseClass")
    monkeypatch.setattr(tools_module, "Langfuse", factory)
    assert LangfuseTools.create(public_key="pk", secret_key=None, base_url="https://x") is None
    assert isinstance(LangfuseTools.create(public_key="pk", secret_key="sk", base_url="https://x"), LangfuseTools)
    assert factory.call_args.kwargs["base_url"] == "https://x"


def test_cli_list_projects(monkeypatch, client, capsys, tmp_path):
    client.api.projects.get.return_value = SimpleNamespace(data=[SimpleNamespace(id="p1", name="opencode")])
    monkeypatch.setattr(main.LangfuseTools, "create", staticmethod(lambda **_kw: LangfuseTools(client)))
    monkeypatch.setenv("O_TRACE_PLUGIN_DIR", str(tmp_path))
    monkeypatch.setenv("OPENCODE_CONFIG_DIR", str(tmp_path))

    assert main.main(["list-projects"]) == 0
    assert capsys.readouterr().out.strip() == "- opencode (p1)"


def test_cli_tool_without_credentials(monkeypatch, capsys, tmp_path):
    monkeypatch.setenv("O_TRACE_PLUGIN_DIR", str(tmp_path))
    monkeypatch.setenv("OPENCODE_CONFIG_DIR", str(tmp_path))
    monkeypatch.delenv("LANGFUSE_PUBLIC_KEY", raising=False)
    monkeypatch.delenv("LANGFUSE_SECRET_KEY", raising=False)

    assert main.main(["query-traces", "--limit", "3"]) == 1
    assert "credentials are not configured" in capsys.readouterr().err
