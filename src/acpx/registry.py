"""Session registry — one JSON document per session in a session directory.

Every function takes the session directory as its first argument; nothing here
holds a handle or lock between calls. Writes are atomic (temp file + replace),
so a reader sees either the old document or the new one. Two concurrent
writers can still race; the last one wins.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import tempfile
from pathlib import Path

from acpx.codec import parse_session_record, serialize_session_record
from acpx.errors import SessionNotFoundError, SessionResolutionError
from acpx.models import SessionRecord, iso_now
from acpx.paths import session_file_path
from acpx.persisted_keys import assert_persisted_key_policy

logger = logging.getLogger(__name__)

# What a malformed or half-readable session file can raise while being parsed.
UNREADABLE_FILE_ERRORS = (OSError, ValueError, TypeError, AttributeError, RecursionError)


def ensure_session_dir(session_dir: Path) -> Path:
    """Create the session directory if missing. Safe to call repeatedly."""
    session_dir = Path(session_dir).expanduser()
    session_dir.mkdir(parents=True, exist_ok=True)
    return session_dir


def absolute_path(value: str | Path) -> str:
    return os.path.abspath(os.path.expanduser(str(value)))


def normalize_name(value: str | None) -> str | None:
    """Strip a session name; an empty name means no name."""
    if value is None:
        return None
    value = value.strip()
    return value or None


# ---------------------------------------------------------------------------
# Write / read
# ---------------------------------------------------------------------------


def write_session_record(session_dir: Path, record: SessionRecord) -> Path:
    """Atomically persist a record. Returns the path of the session file.

    Raises PersistedKeyPolicyError before touching the filesystem if the
    serialized document has a non snake_case key.
    """
    session_dir = ensure_session_dir(session_dir)

    persisted = serialize_session_record(record)
    assert_persisted_key_policy(persisted)
    payload = json.dumps(persisted, indent=2, ensure_ascii=False) + "\n"

    target = session_file_path(session_dir, record.record_id)
    fd, temp_path = tempfile.mkstemp(
        prefix=f"{target.name}.",
        suffix=".tmp",
        dir=session_dir,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, target)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise

    logger.debug("Wrote session %s to %s", record.record_id, target)
    return target


def read_session_file(path: Path, session_dir: Path | None = None) -> SessionRecord | None:
    """Read and parse one session file. Returns None if it is not a valid record.

    Raises OSError / ValueError for unreadable or non-JSON files.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return parse_session_record(data, session_dir=session_dir)


def list_sessions(session_dir: Path) -> list[SessionRecord]:
    """All valid records, most recently used first.

    Unreadable or malformed files are skipped one by one.
    """
    session_dir = ensure_session_dir(session_dir)
    records: list[SessionRecord] = []

    for path in session_dir.iterdir():
        if not path.name.endswith(".json") or not path.is_file():
            continue
        try:
            parsed = read_session_file(path, session_dir)
        except UNREADABLE_FILE_ERRORS as exc:
            logger.debug("Skipping unreadable session file %s: %s", path.name, exc)
            continue
        if parsed is None:
            logger.debug("Skipping invalid session file %s", path.name)
            continue
        records.append(parsed)

    records.sort(key=lambda r: r.last_used_at, reverse=True)
    return records


def list_sessions_for_agent(session_dir: Path, agent_command: str) -> list[SessionRecord]:
    return [r for r in list_sessions(session_dir) if r.agent_command == agent_command]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _match_one(session_id: str, matches: list[SessionRecord], message: str) -> SessionRecord | None:
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        logger.debug("%s (%d candidates)", message, len(matches))
        raise SessionResolutionError(
            message,
            session_id=session_id,
            candidates=[r.record_id for r in matches],
        )
    return None


def resolve_session_record(session_dir: Path, session_id: str) -> SessionRecord:
    """Resolve an identifier to exactly one record.

    Order: direct file lookup by record id, then exact match on record id or
    protocol session id, then suffix match on the same two fields.
    Raises SessionResolutionError on more than one match at a stage and
    SessionNotFoundError when nothing matches.
    """
    session_dir = ensure_session_dir(session_dir)

    direct = session_file_path(session_dir, session_id)
    try:
        record = read_session_file(direct, session_dir)
    except UNREADABLE_FILE_ERRORS as exc:
        logger.debug("Direct lookup of %s failed: %s", direct.name, exc)
        record = None
    if record is not None:
        return record

    sessions = list_sessions(session_dir)

    exact = [
        s for s in sessions if s.record_id == session_id or s.acp_session_id == session_id
    ]
    found = _match_one(session_id, exact, f"Multiple sessions match id: {session_id}")
    if found is not None:
        return found

    suffix = [
        s
        for s in sessions
        if s.record_id.endswith(session_id) or s.acp_session_id.endswith(session_id)
    ]
    found = _match_one(session_id, suffix, f"Session id is ambiguous: {session_id}")
    if found is not None:
        return found

    logger.debug("No session matches %s in %s", session_id, session_dir)
    raise SessionNotFoundError(session_id)


def _matches_scope(record: SessionRecord, cwd: str, name: str | None) -> bool:
    if record.cwd != cwd:
        return False
    return record.name == name


def find_session(
    session_dir: Path,
    agent_command: str,
    cwd: str | Path,
    name: str | None = None,
    include_closed: bool = False,
) -> SessionRecord | None:
    """First record for this agent bound exactly to cwd and name.

    A missing name only matches records that have no name either.
    """
    cwd = absolute_path(cwd)
    name = normalize_name(name)
    for record in list_sessions_for_agent(session_dir, agent_command):
        if not include_closed and record.closed:
            continue
        if _matches_scope(record, cwd, name):
            return record
    return None


def is_within_boundary(boundary: str | Path, target: str | Path) -> bool:
    """True if target is boundary itself or lies below it (component-wise)."""
    boundary = Path(absolute_path(boundary))
    target = Path(absolute_path(target))
    return target == boundary or boundary in target.parents


def walk_directories(start: str | Path, boundary: str | Path | None = None) -> list[str]:
    """Ancestors of start, nearest first, stopping at boundary or filesystem root.

    A boundary that does not contain start collapses the walk to start alone.
    """
    start_path = Path(absolute_path(start))
    boundary_path = Path(absolute_path(boundary)) if boundary is not None else start_path
    if not is_within_boundary(boundary_path, start_path):
        boundary_path = start_path

    directories = [str(start_path)]
    for parent in start_path.parents:
        if not is_within_boundary(boundary_path, parent):
            break
        directories.append(str(parent))
    return directories


def find_session_by_directory_walk(
    session_dir: Path,
    agent_command: str,
    cwd: str | Path,
    name: str | None = None,
    boundary: str | Path | None = None,
) -> SessionRecord | None:
    """Nearest open session at cwd or one of its ancestors inside boundary."""
    name = normalize_name(name)
    sessions = [
        s for s in list_sessions_for_agent(session_dir, agent_command) if not s.closed
    ]
    for directory in walk_directories(cwd, boundary):
        for record in sessions:
            if _matches_scope(record, directory, name):
                return record
    return None


def find_git_repository_root(start_dir: str | Path) -> str | None:
    """Nearest directory at or above start_dir that contains a .git directory."""
    current = Path(absolute_path(start_dir))
    for directory in (current, *current.parents):
        if (directory / ".git").is_dir():
            return str(directory)
    return None


# ---------------------------------------------------------------------------
# Process handling and close
# ---------------------------------------------------------------------------


def _signal_by_name(name: str) -> signal.Signals | None:
    name = name.upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return signal.Signals[name]
    except KeyError:
        return None


def kill_signal_candidates(signal_name: str | None) -> list[signal.Signals]:
    """Signals to send in order: the graceful one, then a forced kill."""
    force = getattr(signal, "SIGKILL", signal.SIGTERM)
    graceful = _signal_by_name(signal_name) if signal_name else None
    if graceful is None:
        graceful = signal.SIGTERM
    if graceful == force:
        return [force]
    return [graceful, force]


def is_process_alive(pid: int | None) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def terminate_process(pid: int, signal_name: str | None = None) -> None:
    """Send the graceful signal then the forced one. Delivery failures are ignored."""
    for sig in kill_signal_candidates(signal_name):
        try:
            os.kill(pid, sig)
        except OSError as exc:
            logger.debug("Signal %s to pid %d not delivered: %s", sig.name, pid, exc)


def close_session(
    session_dir: Path,
    session_id: str,
    signal_name: str | None = None,
) -> SessionRecord:
    """Resolve, terminate the tracked process (best effort), mark closed, persist.

    signal_name overrides the graceful signal; otherwise the record's last exit
    signal is used, falling back to SIGTERM.
    """
    record = resolve_session_record(session_dir, session_id)
    now = iso_now()

    if record.pid:
        terminate_process(record.pid, signal_name or record.last_agent_exit_signal)

    record.closed = True
    record.closed_at = now
    record.pid = None
    record.last_used_at = now
    if record.last_prompt_at is None:
        record.last_prompt_at = now

    write_session_record(session_dir, record)
    return record
