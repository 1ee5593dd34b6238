"""Tests for acpx.config module."""

from pathlib import Path

import pytest
import yaml

from acpx.config import (
    DEFAULTS,
    AcpxConfig,
    agent_command,
    global_config_path,
    load_config,
    save_config_value,
)
from acpx.errors import ConfigError


def test_load_config_no_file(tmp_path):
    """When config file doesn't exist, return defaults without error."""
    config = load_config(config_path=tmp_path / "nonexistent.yaml")
    assert isinstance(config, AcpxConfig)
    assert config.default_agent == "codex"
    assert config.default_permissions == "approve-reads"
    assert config.non_interactive_permissions == "deny"
    assert config.event_max_segments == 5
    assert config.event_max_segment_bytes == 1024 * 1024
    assert config.agents == {}


def test_load_config_session_dir_expanded(tmp_path):
    """Default session_dir should be expanded (no ~ remaining) and not created."""
    config = load_config(config_path=tmp_path / "nonexistent.yaml")
    assert "~" not in str(config.session_dir)
    assert config.session_dir == Path(DEFAULTS["session_dir"]).expanduser()


def test_load_config_partial_override(tmp_path):
    """A partial config file merges with defaults correctly."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("default_permissions: approve-all\n")

    config = load_config(config_path=config_file)
    assert config.default_permissions == "approve-all"
    # Other defaults still apply
    assert config.default_agent == "codex"
    assert config.log_level == "WARNING"


def test_load_config_unknown_keys_ignored(tmp_path):
    """Unknown keys in the YAML file are silently ignored."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("unknown_key: some_value\nevent_max_segments: 3\n")

    config = load_config(config_path=config_file)
    assert config.event_max_segments == 3
    assert not hasattr(config, "unknown_key")


def test_load_config_empty_yaml(tmp_path):
    """An empty file behaves like no file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("")

    config = load_config(config_path=config_file)
    assert config.default_agent == "codex"


def test_load_config_project_file_wins(tmp_path):
    """The project .acpxrc.yaml overrides the global file key by key."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("default_agent: claude\nlog_level: info\n")
    project = tmp_path / "project"
    project.mkdir()
    (project / ".acpxrc.yaml").write_text("default_agent: gemini\n")

    config = load_config(config_path=config_file, cwd=project)
    assert config.default_agent == "gemini"
    assert config.log_level == "INFO"


def test_load_config_agents_merge(tmp_path):
    """Agent maps from both files are merged; entries may be strings or {command}."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("agents:\n  codex: codex-acp --fast\n")
    project = tmp_path / "project"
    project.mkdir()
    (project / ".acpxrc.yaml").write_text("agents:\n  mine:\n    command: ./bin/agent\n")

    config = load_config(config_path=config_file, cwd=project)
    assert config.agents == {"codex": "codex-acp --fast", "mine": "./bin/agent"}


@pytest.mark.parametrize(
    "content",
    [
        "default_permissions: allow-everything\n",
        "non_interactive_permissions: prompt\n",
        "event_max_segments: 0\n",
        "log_level: loud\n",
        "agents: [a, b]\n",
    ],
)
def test_load_config_invalid_values(tmp_path, content):
    """Invalid values raise ConfigError naming the file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(content)

    with pytest.raises(ConfigError, match="config.yaml"):
        load_config(config_path=config_file)


def test_load_config_invalid_yaml(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("default_agent: [unclosed\n")

    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(config_path=config_file)


def test_global_config_path_uses_xdg(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert global_config_path() == tmp_path / "acpx" / "config.yaml"


def test_save_config_value_preserves_other_keys(tmp_path):
    """save_config_value updates one key and keeps the rest."""
    config_file = tmp_path / "nested" / "config.yaml"
    save_config_value("default_agent", "claude", config_path=config_file)
    save_config_value("event_max_segments", 9, config_path=config_file)

    saved = yaml.safe_load(config_file.read_text())
    assert saved == {"default_agent": "claude", "event_max_segments": 9}


def test_save_config_value_rejects_bad_values(tmp_path):
    config_file = tmp_path / "config.yaml"
    with pytest.raises(ConfigError):
        save_config_value("default_permissions", "nope", config_path=config_file)
    with pytest.raises(ConfigError, match="Unknown config key"):
        save_config_value("port", 8080, config_path=config_file)
    assert not config_file.exists()


def test_agent_command_resolution(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("agents:\n  codex: codex-acp\n")
    config = load_config(config_path=config_file)

    assert agent_command(config) == "codex-acp"
    assert agent_command(config, "Codex") == "codex-acp"
    assert agent_command(config, "./my-agent --stdio") == "./my-agent --stdio"
