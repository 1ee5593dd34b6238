"""Segmented NDJSON event stream kept next to each session file.

Layout for a record id X (file names are URL-quoted):

    X.stream.ndjson      active segment, appended to
    X.stream.1.ndjson    most recent archive
    X.stream.N.ndjson    oldest archive kept (N = max_segments)
    X.stream.lock        held by the one writer of X

The record's ``event_log`` pointer and ``last_seq`` follow the stream; they are
persisted on checkpoint() and close().
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from acpx.errors import EventLogError, SessionNotFoundError
from acpx.models import (
    DEFAULT_EVENT_MAX_SEGMENTS,
    ClientOperation,
    EventLog,
    SessionRecord,
    iso_now,
)
from acpx.paths import event_active_path, event_lock_path, event_segment_path
from acpx.persisted_keys import assert_persisted_key_policy
from acpx.registry import ensure_session_dir, resolve_session_record, write_session_record

logger = logging.getLogger(__name__)

EVENT_SCHEMA = "acpx.event.v1"

LOCK_RETRY_SECONDS = 0.015

KIND_TURN_STARTED = "turn_started"
KIND_OUTPUT_DELTA = "output_delta"
KIND_TOOL_CALL = "tool_call"
KIND_PLAN = "plan"
KIND_UPDATE = "update"
KIND_CLIENT_OPERATION = "client_operation"
KIND_TURN_DONE = "turn_done"
KIND_ERROR = "error"


@dataclass
class EventDraft:
    kind: str
    data: dict[str, Any]
    request_id: str | None = None


def _non_empty(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip() or None


def is_event(value: Any) -> bool:
    """Shape check for a decoded event line."""
    if not isinstance(value, dict) or value.get("schema") != EVENT_SCHEMA:
        return False
    for key in ("event_id", "session_id", "ts", "kind"):
        if not isinstance(value.get(key), str):
            return False
    seq = value.get("seq")
    if not isinstance(seq, int) or isinstance(seq, bool) or seq < 1:
        return False
    return isinstance(value.get("data"), dict)


def update_to_drafts(update: dict[str, Any]) -> list[EventDraft]:
    """Stream events derived from one protocol update."""
    tag = update.get("sessionUpdate")
    content = update.get("content") if isinstance(update.get("content"), dict) else {}

    if tag in ("agent_message_chunk", "agent_thought_chunk"):
        if content.get("type") != "text":
            return []
        stream = "output" if tag == "agent_message_chunk" else "thought"
        return [EventDraft(KIND_OUTPUT_DELTA, {"stream": stream, "text": content.get("text", "")})]

    if tag in ("tool_call", "tool_call_update"):
        data = {"tool_call_id": update.get("toolCallId")}
        for key in ("title", "status"):
            if update.get(key) is not None:
                data[key] = update[key]
        return [EventDraft(KIND_TOOL_CALL, data)]

    if tag == "plan":
        entries = [
            {
                "content": entry.get("content"),
                "status": entry.get("status"),
                "priority": entry.get("priority"),
            }
            for entry in update.get("entries") or []
            if isinstance(entry, dict)
        ]
        return [EventDraft(KIND_PLAN, {"entries": entries})]

    return [EventDraft(KIND_UPDATE, {"update": tag})]


def client_operation_draft(operation: ClientOperation) -> EventDraft:
    data = {k: v for k, v in asdict(operation).items() if v is not None}
    return EventDraft(KIND_CLIENT_OPERATION, data)


# ---------------------------------------------------------------------------
# Segment files
# ---------------------------------------------------------------------------


def _size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


def count_segments(session_dir: Path, record_id: str, max_segments: int) -> int:
    count = sum(
        1
        for n in range(1, max_segments + 1)
        if event_segment_path(session_dir, record_id, n).exists()
    )
    if event_active_path(session_dir, record_id).exists():
        count += 1
    return count


def rotate_segments(session_dir: Path, record_id: str, max_segments: int) -> None:
    """Shift archives up by one, dropping the oldest, and archive the active file."""
    event_segment_path(session_dir, record_id, max_segments).unlink(missing_ok=True)
    for n in range(max_segments - 1, 0, -1):
        source = event_segment_path(session_dir, record_id, n)
        if source.exists():
            os.replace(source, event_segment_path(session_dir, record_id, n + 1))
    active = event_active_path(session_dir, record_id)
    if active.exists():
        os.replace(active, event_segment_path(session_dir, record_id, 1))
    logger.info("Rotated event log for %s", record_id)


def _acquire_lock(lock_path: Path, timeout: float | None) -> None:
    payload = json.dumps({"pid": os.getpid(), "created_at": iso_now()}, indent=2) + "\n"
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            if deadline is not None and time.monotonic() >= deadline:
                raise EventLogError(f"Timed out waiting for event log lock {lock_path.name}")
            time.sleep(LOCK_RETRY_SECONDS)
            continue
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        return


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class SessionEventWriter:
    """Exclusive appender for one session's event stream.

    Use as a context manager; leaving the block checkpoints the record and
    releases the lock.
    """

    def __init__(
        self,
        session_dir: Path,
        record: SessionRecord,
        max_segment_bytes: int | None = None,
        max_segments: int | None = None,
        lock_timeout: float | None = None,
    ):
        self.session_dir = ensure_session_dir(session_dir)
        self.record = record
        self.max_segment_bytes = max_segment_bytes or record.event_log.max_segment_bytes
        self.max_segments = max_segments or record.event_log.max_segments
        self._lock_path = event_lock_path(self.session_dir, record.record_id)
        _acquire_lock(self._lock_path, lock_timeout)
        self._next_seq = record.last_seq + 1
        self._closed = False

    def __enter__(self) -> SessionEventWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise EventLogError("SessionEventWriter is closed")

    def create_event(self, draft: EventDraft) -> dict[str, Any]:
        """Envelope a draft with the next sequence number (not yet written)."""
        record = self.record
        event: dict[str, Any] = {
            "schema": EVENT_SCHEMA,
            "event_id": str(uuid.uuid4()),
            "session_id": record.record_id,
            "seq": self._next_seq,
            "ts": iso_now(),
            "kind": draft.kind,
            "data": draft.data,
        }
        optional = {
            "acp_session_id": _non_empty(record.acp_session_id),
            "agent_session_id": _non_empty(record.agent_session_id),
            "request_id": _non_empty(draft.request_id),
        }
        event.update({key: value for key, value in optional.items() if value is not None})
        self._next_seq += 1
        return event

    def append_events(self, events: list[dict[str, Any]], checkpoint: bool = False) -> None:
        self._check_open()
        record = self.record
        active = event_active_path(self.session_dir, record.record_id)

        for event in events:
            if not is_event(event):
                raise EventLogError(f"Refusing to persist invalid {EVENT_SCHEMA} payload")
            expected = record.last_seq + 1
            if event["seq"] != expected:
                raise EventLogError(
                    f"Event sequence mismatch: expected {expected}, got {event['seq']}"
                )
            assert_persisted_key_policy(event)

            line = (json.dumps(event, ensure_ascii=False) + "\n").encode("utf-8")
            current = _size(active)
            if current > 0 and current + len(line) > self.max_segment_bytes:
                rotate_segments(self.session_dir, record.record_id, self.max_segments)

            with open(active, "ab") as f:
                f.write(line)

            record.last_seq = event["seq"]
            self._next_seq = max(self._next_seq, event["seq"] + 1)
            record.last_request_id = event.get("request_id") or record.last_request_id
            record.last_used_at = event["ts"]
            record.event_log = EventLog(
                active_path=str(active),
                segment_count=count_segments(self.session_dir, record.record_id, self.max_segments),
                max_segment_bytes=self.max_segment_bytes,
                max_segments=self.max_segments,
                last_write_at=event["ts"],
                last_write_error=None,
            )

        if checkpoint:
            write_session_record(self.session_dir, record)

    def append_event(self, event: dict[str, Any], checkpoint: bool = False) -> None:
        self.append_events([event], checkpoint=checkpoint)

    def append_draft(self, draft: EventDraft, checkpoint: bool = False) -> dict[str, Any]:
        event = self.create_event(draft)
        self.append_event(event, checkpoint=checkpoint)
        return event

    def append_drafts(self, drafts: list[EventDraft], checkpoint: bool = False) -> list[dict[str, Any]]:
        events = [self.create_event(d) for d in drafts]
        self.append_events(events, checkpoint=checkpoint)
        return events

    def checkpoint(self) -> None:
        self._check_open()
        write_session_record(self.session_dir, self.record)

    def close(self, checkpoint: bool = True) -> None:
        if self._closed:
            return
        try:
            if checkpoint:
                write_session_record(self.session_dir, self.record)
        finally:
            self._closed = True
            self._lock_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _max_segments_for(session_dir: Path, session_id: str) -> int:
    try:
        return resolve_session_record(session_dir, session_id).event_log.max_segments
    except SessionNotFoundError:
        return DEFAULT_EVENT_MAX_SEGMENTS


def list_session_events(session_dir: Path, session_id: str) -> list[dict[str, Any]]:
    """All stored events for a record id, oldest archive first, then the active file.

    Lines that are not events are skipped; undecodable lines raise ValueError.
    """
    session_dir = Path(session_dir)
    max_segments = _max_segments_for(session_dir, session_id)

    files = [
        event_segment_path(session_dir, session_id, n) for n in range(max_segments, 0, -1)
    ]
    files.append(event_active_path(session_dir, session_id))

    events: list[dict[str, Any]] = []
    for path in files:
        if not path.exists():
            continue
        with open(path, encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                parsed = json.loads(line)
                if is_event(parsed):
                    events.append(parsed)
    return events
