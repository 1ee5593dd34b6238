"""Configuration loader — reads optional YAML config files and merges with defaults.

Two files are consulted, later ones winning key by key:
  1. the global file ($XDG_CONFIG_HOME/acpx/config.yaml or ~/.config/acpx/config.yaml)
  2. the project file (<cwd>/.acpxrc.yaml)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from acpx.errors import ConfigError
from acpx.filesystem import NON_INTERACTIVE_POLICIES, PERMISSION_MODES
from acpx.models import DEFAULT_EVENT_MAX_SEGMENTS, DEFAULT_EVENT_SEGMENT_MAX_BYTES

logger = logging.getLogger(__name__)

PROJECT_CONFIG_NAME = ".acpxrc.yaml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULTS = {
    "session_dir": "~/.acpx/sessions",
    "default_agent": "codex",
    "agents": {},
    "default_permissions": "approve-reads",
    "non_interactive_permissions": "deny",
    "event_max_segment_bytes": DEFAULT_EVENT_SEGMENT_MAX_BYTES,
    "event_max_segments": DEFAULT_EVENT_MAX_SEGMENTS,
    "log_level": "WARNING",
}


@dataclass
class AcpxConfig:
    session_dir: Path
    default_agent: str
    default_permissions: str
    non_interactive_permissions: str
    event_max_segment_bytes: int
    event_max_segments: int
    log_level: str
    agents: dict[str, str] = field(default_factory=dict)


def global_config_path() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME", "").strip()
    base = Path(xdg) if xdg else Path("~/.config").expanduser()
    return base / "acpx" / "config.yaml"


def project_config_path(cwd: str | Path) -> Path:
    return Path(cwd).expanduser().resolve() / PROJECT_CONFIG_NAME


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        return {}
    with open(path) as f:
        try:
            loaded = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return loaded if isinstance(loaded, dict) else {}


def _check_choice(value: object, choices: tuple[str, ...], key: str, source: Path) -> str:
    if value not in choices:
        raise ConfigError(
            f"Invalid config {key} in {source}: expected one of {', '.join(choices)}"
        )
    return value


def _check_positive_int(value: object, key: str, source: Path) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"Invalid config {key} in {source}: expected a positive integer")
    return value


def _parse_agents(value: object, source: Path) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid config agents in {source}: expected a mapping")
    agents = {}
    for name, entry in value.items():
        command = entry.get("command") if isinstance(entry, dict) else entry
        if not isinstance(command, str) or not command.strip():
            raise ConfigError(
                f"Invalid config agents.{name} in {source}: expected a non-empty command"
            )
        agents[str(name).strip().lower()] = command.strip()
    return agents


def _validate(key: str, value: object, source: Path) -> object:
    if key == "default_permissions":
        return _check_choice(value, PERMISSION_MODES, key, source)
    if key == "non_interactive_permissions":
        return _check_choice(value, NON_INTERACTIVE_POLICIES, key, source)
    if key == "log_level":
        return _check_choice(str(value).upper(), LOG_LEVELS, key, source)
    if key in ("event_max_segment_bytes", "event_max_segments"):
        return _check_positive_int(value, key, source)
    if key == "agents":
        return _parse_agents(value, source)
    if key == "default_agent":
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"Invalid config default_agent in {source}: expected non-empty string")
        return value.strip().lower()
    return value


def save_config_value(key: str, value: object, config_path: Path | None = None) -> None:
    """Update a single key in the global config file, preserving other settings."""
    if config_path is None:
        config_path = global_config_path()
    config_path = config_path.expanduser()
    if key not in DEFAULTS:
        raise ConfigError(f"Unknown config key: {key}")
    value = _validate(key, value, config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    existing = _read_yaml(config_path)
    existing[key] = value
    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)


def load_config(config_path: Path | None = None, cwd: str | Path | None = None) -> AcpxConfig:
    """Load the global config, then the project config for cwd, merged with defaults.

    Unknown keys are ignored. Missing files are not an error. Expands ~ in
    session_dir but does not create it.
    """
    if config_path is None:
        config_path = global_config_path()

    sources = [config_path.expanduser()]
    if cwd is not None:
        sources.append(project_config_path(cwd))

    merged = dict(DEFAULTS)
    agents: dict[str, str] = {}

    for source in sources:
        user_config = _read_yaml(source)
        for key in DEFAULTS:
            if key not in user_config or user_config[key] is None:
                continue
            value = _validate(key, user_config[key], source)
            if key == "agents":
                agents.update(value)
            else:
                merged[key] = value
        if user_config:
            logger.debug("Loaded config from %s", source)

    return AcpxConfig(
        session_dir=Path(str(merged["session_dir"])).expanduser(),
        default_agent=merged["default_agent"],
        agents=agents,
        default_permissions=merged["default_permissions"],
        non_interactive_permissions=merged["non_interactive_permissions"],
        event_max_segment_bytes=int(merged["event_max_segment_bytes"]),
        event_max_segments=int(merged["event_max_segments"]),
        log_level=str(merged["log_level"]).upper(),
    )


def agent_command(config: AcpxConfig, agent: str | None = None) -> str:
    """Command line for an agent name; unknown names are taken as a literal command."""
    name = (agent or config.default_agent).strip()
    return config.agents.get(name.lower(), name)
