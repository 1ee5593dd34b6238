"""Session lifecycle on top of the registry and the two reducers.

Every protocol update has to reach both the projection and the conversation
model; apply_session_update is the one place that does that.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from acpx import conversation as conversation_model
from acpx import projection as projection_model
from acpx.models import (
    AgentMessage,
    ClientOperation,
    HistoryEntry,
    SessionRecord,
    TextContent,
    UserMessage,
    iso_now,
)
from acpx.event_log import SessionEventWriter, client_operation_draft, update_to_drafts
from acpx.paths import default_event_log
from acpx.registry import (
    absolute_path,
    find_git_repository_root,
    find_session_by_directory_walk,
    is_process_alive,
    normalize_name,
    write_session_record,
)

logger = logging.getLogger(__name__)

HISTORY_PREVIEW_CHARS = 220
DEFAULT_HISTORY_LIMIT = 20


@dataclass
class EnsureResult:
    record: SessionRecord
    created: bool


def create_session(
    session_dir: Path,
    agent_command: str,
    cwd: str | Path,
    acp_session_id: str | None = None,
    name: str | None = None,
    agent_session_id: str | None = None,
    pid: int | None = None,
    agent_started_at: str | None = None,
    protocol_version: int | None = None,
    agent_capabilities: dict[str, Any] | None = None,
    max_segment_bytes: int | None = None,
    max_segments: int | None = None,
) -> SessionRecord:
    """Build a fresh record for a newly opened agent session and persist it.

    The record id is the protocol session id the agent handed out; a random
    one is generated when the caller has none yet.
    """
    session_id = acp_session_id or str(uuid.uuid4())
    now = iso_now()
    event_log = default_event_log(session_dir, session_id)
    if max_segment_bytes:
        event_log.max_segment_bytes = max_segment_bytes
    if max_segments:
        event_log.max_segments = max_segments
    record = SessionRecord(
        record_id=session_id,
        acp_session_id=session_id,
        agent_session_id=(agent_session_id or "").strip() or None,
        agent_command=agent_command,
        cwd=absolute_path(cwd),
        name=normalize_name(name),
        created_at=now,
        last_used_at=now,
        event_log=event_log,
        conversation=conversation_model.create_conversation(now),
        pid=pid,
        agent_started_at=agent_started_at,
        protocol_version=protocol_version,
        agent_capabilities=agent_capabilities,
    )
    write_session_record(session_dir, record)
    logger.info("Created session %s for %s in %s", session_id, agent_command, record.cwd)
    return record


def ensure_session(
    session_dir: Path,
    agent_command: str,
    cwd: str | Path,
    name: str | None = None,
    walk_boundary: str | Path | None = None,
    **create_kwargs: Any,
) -> EnsureResult:
    """Reuse the nearest open session for cwd, or create one.

    The walk is bounded by walk_boundary, else the enclosing git repository,
    else cwd itself.
    """
    cwd = absolute_path(cwd)
    boundary = walk_boundary or find_git_repository_root(cwd) or cwd
    existing = find_session_by_directory_walk(
        session_dir, agent_command, cwd, name=name, boundary=boundary
    )
    if existing is not None:
        logger.debug("Reusing session %s for %s", existing.record_id, cwd)
        return EnsureResult(record=existing, created=False)

    record = create_session(session_dir, agent_command, cwd, name=name, **create_kwargs)
    return EnsureResult(record=record, created=True)


# ---------------------------------------------------------------------------
# Applying traffic to a record
# ---------------------------------------------------------------------------


def submit_prompt(
    session_dir: Path,
    record: SessionRecord,
    prompt: str,
    request_id: str | None = None,
    timestamp: str | None = None,
) -> UserMessage | None:
    """Record a prompt in the transcript and persist the record.

    Blank prompts leave the transcript alone but still count as use.
    """
    timestamp = timestamp or iso_now()
    message = conversation_model.record_prompt_submission(
        record.conversation, prompt, timestamp
    )
    record.last_prompt_at = timestamp
    record.last_used_at = timestamp
    if request_id is not None:
        record.last_request_id = request_id
    write_session_record(session_dir, record)
    return message


def apply_session_update(
    record: SessionRecord,
    update: dict[str, Any],
    timestamp: str | None = None,
    meta: Any = None,
    writer: SessionEventWriter | None = None,
    request_id: str | None = None,
) -> None:
    """Fold one protocol update into both the projection and the transcript.

    Only mutates the record; persisting is up to the caller. With a writer, the
    stream events derived from the update are appended to the session's event
    log as well.
    """
    timestamp = timestamp or iso_now()
    projection_model.record_session_update(record.projection, update, timestamp, meta=meta)
    record.acpx = conversation_model.record_session_update(
        record.conversation, record.acpx, update, timestamp
    )
    if writer is not None:
        drafts = update_to_drafts(update)
        for draft in drafts:
            draft.request_id = request_id
        writer.append_drafts(drafts)


def apply_session_notification(
    record: SessionRecord,
    notification: dict[str, Any],
    timestamp: str | None = None,
    writer: SessionEventWriter | None = None,
    request_id: str | None = None,
) -> None:
    """Like apply_session_update, for a whole ``session/update`` params object."""
    update = notification.get("update")
    if not isinstance(update, dict):
        logger.debug("Ignoring session notification without an update payload")
        return
    apply_session_update(
        record,
        update,
        timestamp,
        meta=notification.get("_meta"),
        writer=writer,
        request_id=request_id,
    )


def apply_client_operation(
    record: SessionRecord,
    operation: ClientOperation,
    timestamp: str | None = None,
    writer: SessionEventWriter | None = None,
) -> None:
    timestamp = timestamp or operation.timestamp or iso_now()
    projection_model.record_client_operation(record.projection, operation, timestamp)
    record.acpx = conversation_model.record_client_operation(
        record.conversation, record.acpx, operation, timestamp
    )
    if writer is not None:
        writer.append_draft(client_operation_draft(operation))


def record_agent_started(record: SessionRecord, pid: int, started_at: str | None = None) -> None:
    """A new agent process now backs the session; forget the previous exit."""
    record.pid = pid
    record.agent_started_at = started_at or iso_now()
    record.last_agent_exit_code = None
    record.last_agent_exit_signal = None
    record.last_agent_exit_at = None
    record.last_agent_disconnect_reason = None


def record_agent_exit(
    record: SessionRecord,
    exit_code: int | None = None,
    exit_signal: str | None = None,
    reason: str | None = None,
    exited_at: str | None = None,
) -> None:
    record.pid = None
    record.last_agent_exit_code = exit_code
    record.last_agent_exit_signal = exit_signal
    record.last_agent_exit_at = exited_at or iso_now()
    record.last_agent_disconnect_reason = reason


# ---------------------------------------------------------------------------
# Read-side helpers
# ---------------------------------------------------------------------------


def to_preview_text(value: str, limit: int = HISTORY_PREVIEW_CHARS) -> str:
    collapsed = re.sub(r"\s+", " ", value).strip()
    if len(collapsed) <= limit:
        return collapsed
    if limit <= 3:
        return collapsed[:limit]
    return collapsed[: limit - 3] + "..."


def _message_text(message) -> tuple[str, str]:
    if isinstance(message, UserMessage):
        return "user", message.text
    if isinstance(message, AgentMessage):
        text = " ".join(c.text for c in message.content if isinstance(c, TextContent))
        return "assistant", text
    return "", ""


def history_entries(record: SessionRecord, limit: int = DEFAULT_HISTORY_LIMIT) -> list[HistoryEntry]:
    """The last `limit` user/assistant turns as short text previews.

    Messages carry no timestamps of their own, so every entry is stamped with
    the transcript's updated_at.
    """
    entries: list[HistoryEntry] = []
    for message in record.conversation.messages:
        role, text = _message_text(message)
        preview = to_preview_text(text)
        if not preview:
            continue
        entries.append(
            HistoryEntry(
                role=role,
                timestamp=record.conversation.updated_at,
                text_preview=preview,
            )
        )
    if limit <= 0:
        return []
    return entries[-limit:]


def needs_reconnect(
    record: SessionRecord,
    health_check: Callable[[str], bool] | None = None,
) -> bool:
    """Whether the next prompt has to start or reattach an agent process.

    health_check(record_id) reports whether a queue owner is serving the session; a
    healthy owner means no reconnect. Otherwise the tracked pid decides.
    """
    if health_check is not None and health_check(record.record_id):
        return False
    return not is_process_alive(record.pid)
