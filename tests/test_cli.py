"""Tests for the acpx command line."""

import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from acpx.cli import cli
from acpx.config import AcpxConfig
from acpx.models import AgentMessage, TextContent, TokenUsage, UserMessage
from acpx.registry import read_session_file, write_session_record
from acpx.paths import session_file_path


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the global config at tmp_path and run from an empty directory."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.chdir(home)


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    (path / "notes.txt").write_text("alpha\nbeta\n")
    return path


@pytest.fixture
def invoke(session_dir):
    runner = CliRunner()

    def _invoke(*args, input=None):
        return runner.invoke(cli, ["--session-dir", str(session_dir), *args], input=input)

    return _invoke


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------


def test_list_empty(invoke):
    result = invoke("list")
    assert result.exit_code == 0
    assert "No sessions." in result.output


def test_list_and_filter(invoke, session_dir, make_record):
    write_session_record(session_dir, make_record("one", agent_command="codex", name="api"))
    write_session_record(session_dir, make_record("two", agent_command="claude", closed=True))

    result = invoke("list")
    assert result.exit_code == 0
    assert "one [api]  open" in result.output
    assert "two  closed" in result.output

    result = invoke("list", "--agent", "claude", "--json")
    assert [doc["acpx_record_id"] for doc in json.loads(result.output)] == ["two"]


def test_show_resolves_suffix(invoke, session_dir, make_record):
    write_session_record(session_dir, make_record("0199-abcdef"))
    result = invoke("show", "cdef")
    assert result.exit_code == 0
    assert json.loads(result.output)["acpx_record_id"] == "0199-abcdef"


def test_missing_session_exits_4(invoke):
    result = invoke("show", "nope")
    assert result.exit_code == 4
    assert "No session found: nope" in result.output


def test_missing_session_as_jsonrpc_error(session_dir):
    runner = CliRunner()
    result = runner.invoke(cli, ["--session-dir", str(session_dir), "--format", "json", "show", "nope"])
    assert result.exit_code == 4
    response = json.loads(result.stdout)
    assert response["jsonrpc"] == "2.0"
    assert response["id"] is None
    assert response["error"]["code"] == -32002
    assert response["error"]["message"] == "No session found: nope"
    assert response["error"]["data"] == {
        "acpxCode": "NO_SESSION",
        "origin": "cli",
        "retryable": False,
        "sessionId": "nope",
    }


def test_ambiguous_session_exits_4(invoke, session_dir, make_record):
    write_session_record(session_dir, make_record("x-abc"))
    write_session_record(session_dir, make_record("y-abc"))
    result = invoke("history", "abc")
    assert result.exit_code == 4
    assert "ambiguous" in result.output


def test_history(invoke, session_dir, make_record):
    record = make_record()
    record.conversation.messages = [
        UserMessage(id="u1", text="list files"),
        AgentMessage(id="a1", content=[TextContent(text="a.py b.py")]),
    ]
    record.conversation.cumulative_token_usage = TokenUsage(60, 40, 10, 15)
    write_session_record(session_dir, record)

    result = invoke("history", "sess-001")
    assert result.exit_code == 0
    assert "     user: list files" in result.output
    assert "assistant: a.py b.py" in result.output
    assert "Tokens: 60 in, 40 out, 15 cache read, 10 cache write." in result.output


def test_history_empty(invoke, session_dir, make_record):
    write_session_record(session_dir, make_record())
    assert "No history." in invoke("history", "sess-001").output


def test_ensure_creates_then_reuses(invoke, session_dir, workdir):
    first = invoke("ensure", "--cwd", str(workdir), "--agent", "codex")
    assert first.exit_code == 0
    assert first.output.startswith("Created session ")

    second = invoke("ensure", "--cwd", str(workdir))
    assert second.exit_code == 0
    assert second.output.startswith("Using session ")
    assert first.output.split()[2] == second.output.split()[2]


def test_ensure_uses_configured_agent_alias(invoke, session_dir, workdir):
    assert invoke("config", "set", "agents", "{claude: claude-code-acp}").exit_code == 0
    result = invoke("ensure", "--cwd", str(workdir), "--agent", "claude")
    record_id = result.output.split()[2]
    record = read_session_file(session_file_path(session_dir, record_id), session_dir)
    assert record.agent_command == "claude-code-acp"


def test_close(invoke, session_dir, make_record):
    write_session_record(session_dir, make_record())
    result = invoke("close", "sess-001")
    assert result.exit_code == 0
    assert "Closed session sess-001." in result.output
    assert read_session_file(session_file_path(session_dir, "sess-001"), session_dir).closed


# ---------------------------------------------------------------------------
# fs / events
# ---------------------------------------------------------------------------


def test_fs_read_records_operations(invoke, session_dir, make_record, workdir):
    write_session_record(session_dir, make_record(cwd=str(workdir)))

    result = invoke("fs", "read", "sess-001", str(workdir / "notes.txt"), "--line", "2", "--limit", "1")
    assert result.exit_code == 0
    assert result.output == "beta\n"

    stored = read_session_file(session_file_path(session_dir, "sess-001"), session_dir)
    assert [e.operation.status for e in stored.projection.events] == ["running", "completed"]
    assert stored.last_seq == 2

    events = [json.loads(line) for line in invoke("events", "sess-001").output.splitlines()]
    assert [(e["seq"], e["kind"], e["data"]["status"]) for e in events] == [
        (1, "client_operation", "running"),
        (2, "client_operation", "completed"),
    ]


def test_fs_write_denied_non_interactive(invoke, session_dir, make_record, workdir):
    write_session_record(session_dir, make_record(cwd=str(workdir)))
    result = invoke("fs", "write", "sess-001", str(workdir / "out.txt"), input="data")
    assert result.exit_code == 5
    assert "Permission denied for fs/write_text_file" in result.output
    assert not (workdir / "out.txt").exists()

    stored = read_session_file(session_file_path(session_dir, "sess-001"), session_dir)
    assert stored.projection.events[-1].operation.status == "failed"


class TestPermissionConfig:
    """fs commands follow the permission settings of the loaded config."""

    def _config(self, session_dir, **overrides):
        values = dict(
            session_dir=session_dir,
            default_agent="codex",
            default_permissions="approve-reads",
            non_interactive_permissions="deny",
            event_max_segment_bytes=1024 * 1024,
            event_max_segments=5,
            log_level="WARNING",
        )
        values.update(overrides)
        return AcpxConfig(**values)

    def test_fail_policy_exits_5(self, session_dir, make_record, workdir):
        write_session_record(session_dir, make_record(cwd=str(workdir)))

        runner = CliRunner()
        with patch("acpx.cli.load_config") as mock_config:
            mock_config.return_value = self._config(session_dir, non_interactive_permissions="fail")
            result = runner.invoke(cli, ["fs", "write", "sess-001", str(workdir / "out.txt")], input="data")

        assert result.exit_code == 5
        assert "non-interactive" in result.output

    def test_approve_all_writes(self, session_dir, make_record, workdir):
        write_session_record(session_dir, make_record(cwd=str(workdir)))

        runner = CliRunner()
        with patch("acpx.cli.load_config") as mock_config:
            mock_config.return_value = self._config(session_dir, default_permissions="approve-all")
            result = runner.invoke(cli, ["fs", "write", "sess-001", str(workdir / "out.txt")], input="data")

        assert result.exit_code == 0
        assert "Wrote " in result.output
        assert (workdir / "out.txt").read_text() == "data"

    def test_settings_from_config_file(self, invoke, session_dir, make_record, workdir):
        write_session_record(session_dir, make_record(cwd=str(workdir)))
        assert invoke("config", "set", "default_permissions", "approve-all").exit_code == 0
        result = invoke("fs", "write", "sess-001", str(workdir / "out.txt"), input="data")
        assert result.exit_code == 0
        assert (workdir / "out.txt").read_text() == "data"


def test_fs_path_outside_cwd_is_usage_error(invoke, session_dir, make_record, workdir, tmp_path):
    write_session_record(session_dir, make_record(cwd=str(workdir)))
    result = invoke("fs", "read", "sess-001", str(tmp_path / "elsewhere.txt"))
    assert result.exit_code == 2
    assert "outside allowed cwd subtree" in result.output


def test_fs_errors_as_jsonrpc(invoke, session_dir, make_record, workdir, tmp_path):
    write_session_record(session_dir, make_record(cwd=str(workdir)))

    result = invoke("--format", "json", "fs", "read", "sess-001", str(tmp_path / "elsewhere.txt"))
    assert result.exit_code == 2
    error = json.loads(result.stdout)["error"]
    assert error["code"] == -32602
    assert error["data"]["acpxCode"] == "USAGE"

    result = invoke("--format", "json", "fs", "write", "sess-001", str(workdir / "out.txt"), input="data")
    assert result.exit_code == 5
    error = json.loads(result.stdout)["error"]
    assert error["code"] == -32071
    assert error["message"] == "Permission denied for fs/write_text_file"


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


def test_config_set_and_show(invoke, tmp_path):
    assert invoke("config", "set", "event_max_segments", "3").exit_code == 0
    saved = yaml.safe_load((tmp_path / "xdg" / "acpx" / "config.yaml").read_text())
    assert saved == {"event_max_segments": 3}

    shown = yaml.safe_load(invoke("config", "show").output)
    assert shown["event_max_segments"] == 3
    assert shown["default_agent"] == "codex"


def test_config_set_invalid_is_usage_error(invoke):
    result = invoke("config", "set", "default_permissions", "sometimes")
    assert result.exit_code == 2
    assert "expected one of" in result.output


def test_config_set_unknown_key(invoke):
    result = invoke("config", "set", "colour", "blue")
    assert result.exit_code == 2
    assert "Unknown config key: colour" in result.output
