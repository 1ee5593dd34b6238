"""CLI entrypoint — acpx list, show, history, ensure, close, events, fs, config."""

from __future__ import annotations

import functools
import json
import logging
import os
from dataclasses import asdict
from pathlib import Path

import click
import yaml

from acpx.codec import serialize_session_record
from acpx.config import agent_command, load_config, save_config_value
from acpx.errors import AcpxError
from acpx.event_log import SessionEventWriter, list_session_events
from acpx.filesystem import FileSystemHandlers
from acpx.jsonrpc import error_response_for
from acpx.registry import (
    close_session,
    list_sessions,
    list_sessions_for_agent,
    resolve_session_record,
)
from acpx.session import apply_client_operation, ensure_session, history_entries

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_TIMEOUT = 3
EXIT_NO_SESSION = 4
EXIT_PERMISSION_DENIED = 5

EXIT_CODES = {
    "NO_SESSION": EXIT_NO_SESSION,
    "TIMEOUT": EXIT_TIMEOUT,
    "PERMISSION_DENIED": EXIT_PERMISSION_DENIED,
    "PERMISSION_PROMPT_UNAVAILABLE": EXIT_PERMISSION_DENIED,
    "USAGE": EXIT_USAGE,
    "RUNTIME": EXIT_ERROR,
}

FORMAT_KEY = "acpx.format"


def reports_errors(func):
    """Turn AcpxError into the matching exit code.

    The error is a message on stderr, or a JSON-RPC error response on stdout
    under `--format json`.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AcpxError as exc:
            ctx = click.get_current_context(silent=True)
            if ctx is not None and ctx.meta.get(FORMAT_KEY) == "json":
                click.echo(json.dumps(error_response_for(exc)))
            else:
                click.echo(f"Error: {exc}", err=True)
            raise SystemExit(EXIT_CODES.get(exc.output_code, EXIT_ERROR))

    return wrapper


@click.group()
@click.option("--session-dir", default=None, type=click.Path(file_okay=False), help="Override the session directory.")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="How errors are reported.",
)
@click.pass_context
@reports_errors
def cli(ctx: click.Context, session_dir: str | None, verbose: bool, output_format: str):
    """acpx — persistent sessions for coding agents."""
    ctx.meta[FORMAT_KEY] = output_format
    config = load_config(cwd=os.getcwd())
    if session_dir:
        config.session_dir = Path(session_dir).expanduser()
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config


def _status(record) -> str:
    return "closed" if record.closed else "open"


@cli.command("list")
@click.option("--agent", default=None, help="Only sessions of this agent.")
@click.option("--json", "as_json", is_flag=True, help="Print records as JSON.")
@click.pass_obj
@reports_errors
def list_command(config, agent: str | None, as_json: bool):
    """List sessions, most recently used first."""
    if agent:
        records = list_sessions_for_agent(config.session_dir, agent_command(config, agent))
    else:
        records = list_sessions(config.session_dir)

    if as_json:
        click.echo(json.dumps([serialize_session_record(r) for r in records], indent=2))
        return
    if not records:
        click.echo("No sessions.")
        return
    for r in records:
        name = f" [{r.name}]" if r.name else ""
        click.echo(f"{r.record_id}{name}  {_status(r)}  {r.cwd}  {r.last_used_at}")


@cli.command()
@click.argument("session_id")
@click.pass_obj
@reports_errors
def show(config, session_id: str):
    """Print a session record as JSON."""
    record = resolve_session_record(config.session_dir, session_id)
    click.echo(json.dumps(serialize_session_record(record), indent=2))


@cli.command()
@click.argument("session_id")
@click.option("--limit", default=20, show_default=True, type=int, help="Number of turns to show.")
@click.pass_obj
@reports_errors
def history(config, session_id: str, limit: int):
    """Show recent turns of a session."""
    record = resolve_session_record(config.session_dir, session_id)
    entries = history_entries(record, limit=limit)
    if not entries:
        click.echo("No history.")
        return
    for entry in entries:
        click.echo(f"{entry.role:>9}: {entry.text_preview}")

    usage = record.conversation.cumulative_token_usage
    click.echo(
        f"\nTokens: {usage.input_tokens} in, {usage.output_tokens} out, "
        f"{usage.cache_read_input_tokens} cache read, "
        f"{usage.cache_creation_input_tokens} cache write."
    )


@cli.command()
@click.option("--agent", default=None, help="Agent name or command line (default: config default_agent).")
@click.option("--cwd", default=None, type=click.Path(file_okay=False), help="Working directory (default: current).")
@click.option("--name", default=None, help="Session name.")
@click.pass_obj
@reports_errors
def ensure(config, agent: str | None, cwd: str | None, name: str | None):
    """Reuse the nearest open session for a directory, or register a new one."""
    result = ensure_session(
        config.session_dir,
        agent_command(config, agent),
        cwd or os.getcwd(),
        name=name,
        max_segment_bytes=config.event_max_segment_bytes,
        max_segments=config.event_max_segments,
    )
    verb = "Created" if result.created else "Using"
    click.echo(f"{verb} session {result.record.record_id} ({result.record.cwd})")


@cli.command()
@click.argument("session_id")
@click.option("--signal", "signal_name", default=None, help="Signal sent before SIGKILL (default: SIGTERM).")
@click.pass_obj
@reports_errors
def close(config, session_id: str, signal_name: str | None):
    """Close a session and stop its agent process."""
    record = close_session(config.session_dir, session_id, signal_name=signal_name)
    click.echo(f"Closed session {record.record_id}.")


@cli.command()
@click.argument("session_id")
@click.pass_obj
@reports_errors
def events(config, session_id: str):
    """Print a session's stored events as NDJSON."""
    record = resolve_session_record(config.session_dir, session_id)
    for event in list_session_events(config.session_dir, record.record_id):
        click.echo(json.dumps(event))


@cli.group("config")
def config_group():
    """Show or change configuration."""


@config_group.command("show")
@click.pass_obj
def config_show(config):
    """Print the effective configuration."""
    values = asdict(config)
    values["session_dir"] = str(values["session_dir"])
    click.echo(yaml.dump(values, default_flow_style=False), nl=False)


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@reports_errors
def config_set(key: str, value: str):
    """Set KEY to VALUE in the global config file."""
    save_config_value(key, yaml.safe_load(value))
    click.echo(f"Set {key}.")


@cli.group("fs")
def fs_group():
    """Read or write files inside a session's cwd, as the agent would."""


def _run_fs(config, session_id: str, action):
    """Run action(handlers) with every client operation recorded on the session."""
    record = resolve_session_record(config.session_dir, session_id)
    with SessionEventWriter(config.session_dir, record) as writer:

        def on_operation(operation):
            apply_client_operation(record, operation, writer=writer)

        handlers = FileSystemHandlers(
            record.cwd,
            permission_mode=config.default_permissions,
            non_interactive_permissions=config.non_interactive_permissions,
            on_operation=on_operation,
        )
        return action(handlers)


@fs_group.command("read")
@click.argument("session_id")
@click.argument("path")
@click.option("--line", default=None, type=int, help="First line to read (1-based).")
@click.option("--limit", default=None, type=int, help="Maximum number of lines.")
@click.pass_obj
@reports_errors
def fs_read(config, session_id: str, path: str, line: int | None, limit: int | None):
    """Print PATH as the session's agent would read it."""
    content = _run_fs(
        config,
        session_id,
        lambda handlers: handlers.read_text_file(session_id, path, line=line, limit=limit),
    )
    click.echo(content)


@fs_group.command("write")
@click.argument("session_id")
@click.argument("path")
@click.argument("content_file", type=click.File("r"), default="-")
@click.pass_obj
@reports_errors
def fs_write(config, session_id: str, path: str, content_file):
    """Write CONTENT_FILE (default: stdin) to PATH as the session's agent would."""
    content = content_file.read()
    _run_fs(
        config,
        session_id,
        lambda handlers: handlers.write_text_file(session_id, path, content),
    )
    click.echo(f"Wrote {path}.")
