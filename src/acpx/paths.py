"""File naming inside the session directory."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import quote

from acpx.models import (
    DEFAULT_EVENT_MAX_SEGMENTS,
    DEFAULT_EVENT_SEGMENT_MAX_BYTES,
    EventLog,
)


def safe_id(record_id: str) -> str:
    """URL-safe encoding of a record id, usable as a file name."""
    return quote(record_id, safe="")


def session_file_path(session_dir: Path, record_id: str) -> Path:
    return Path(session_dir) / f"{safe_id(record_id)}.json"


def event_active_path(session_dir: Path, record_id: str) -> Path:
    return Path(session_dir) / f"{safe_id(record_id)}.stream.ndjson"


def event_segment_path(session_dir: Path, record_id: str, segment: int) -> Path:
    return Path(session_dir) / f"{safe_id(record_id)}.stream.{segment}.ndjson"


def event_lock_path(session_dir: Path, record_id: str) -> Path:
    return Path(session_dir) / f"{safe_id(record_id)}.stream.lock"


def default_event_log(session_dir: Path, record_id: str) -> EventLog:
    return EventLog(
        active_path=str(event_active_path(session_dir, record_id)),
        segment_count=1,
        max_segment_bytes=DEFAULT_EVENT_SEGMENT_MAX_BYTES,
        max_segments=DEFAULT_EVENT_MAX_SEGMENTS,
    )
