"""Session record codec — in-memory SessionRecord <-> on-disk JSON document.

serialize_session_record produces the canonical snake_case document.
parse_session_record is lenient about what older writers may have left out
(missing transcript, projection or event-log pointer) but rejects documents
whose required fields are missing or of the wrong type by returning None.
"""

from __future__ import annotations

import math
import uuid
from pathlib import Path
from typing import Any

from acpx.models import (
    SESSION_RECORD_SCHEMA,
    AcpProjection,
    AgentMessage,
    ClientOperation,
    Conversation,
    EventLog,
    Message,
    PlanEntry,
    ProjectionEvent,
    SessionRecord,
    SessionState,
    TextContent,
    ThinkingContent,
    TokenUsage,
    ToolCallSnapshot,
    ToolResult,
    ToolUse,
    UsageSnapshot,
    UserMessage,
)
from acpx.paths import default_event_log

_INVALID = object()

TOKEN_USAGE_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)

# ---------------------------------------------------------------------------
# Serialize
# ---------------------------------------------------------------------------


def _serialize_agent_content(entry) -> dict:
    if isinstance(entry, TextContent):
        return {"Text": entry.text}
    if isinstance(entry, ThinkingContent):
        return {"Thinking": {"text": entry.text, "signature": None}}
    return {
        "ToolUse": {
            "id": entry.id,
            "name": entry.name,
            "raw_input": entry.raw_input,
            "input": entry.input,
            "is_input_complete": entry.is_input_complete,
        }
    }


def _serialize_tool_result(result: ToolResult) -> dict:
    return {
        "tool_use_id": result.tool_use_id,
        "tool_name": result.tool_name,
        "is_error": result.is_error,
        "content": {"Text": result.content},
        "output": result.output,
        "status": result.status,
    }


def _serialize_message(message: Message) -> dict:
    if isinstance(message, UserMessage):
        return {"User": {"id": message.id, "content": [{"Text": message.text}]}}
    return {
        "Agent": {
            "id": message.id,
            "content": [_serialize_agent_content(c) for c in message.content],
            "tool_results": {
                key: _serialize_tool_result(value)
                for key, value in message.tool_results.items()
            },
        }
    }


def _serialize_event(event: ProjectionEvent) -> dict:
    data: dict[str, Any] = {"type": event.type, "timestamp": event.timestamp}
    if event.update is not None:
        data["update"] = event.update
    if event.meta is not None:
        data["_meta"] = event.meta
    if event.operation is not None:
        op = event.operation
        data["operation"] = {
            "method": op.method,
            "status": op.status,
            "summary": op.summary,
            "details": op.details,
            "timestamp": op.timestamp,
        }
    return data


def _serialize_projection(projection: AcpProjection) -> dict:
    usage = projection.usage
    return {
        "events": [_serialize_event(e) for e in projection.events],
        "tool_calls": [
            {
                "tool_call_id": tc.tool_call_id,
                "title": tc.title,
                "status": tc.status,
                "kind": tc.kind,
                "locations": tc.locations,
                "content": tc.content,
                "raw_input": tc.raw_input,
                "raw_output": tc.raw_output,
                "updated_at": tc.updated_at,
            }
            for tc in projection.tool_calls
        ],
        "plan": (
            None
            if projection.plan is None
            else [
                {"content": p.content, "status": p.status, "priority": p.priority}
                for p in projection.plan
            ]
        ),
        "available_commands": projection.available_commands,
        "current_mode_id": projection.current_mode_id,
        "config_options": projection.config_options,
        "session_title": projection.session_title,
        "session_updated_at": projection.session_updated_at,
        "usage": (
            None
            if usage is None
            else {
                "used": usage.used,
                "size": usage.size,
                "cost_amount": usage.cost_amount,
                "cost_currency": usage.cost_currency,
            }
        ),
    }


def serialize_session_record(record: SessionRecord) -> dict:
    """Build the on-disk document for a record. Keys are snake_case only."""
    conversation = record.conversation
    return {
        "schema": SESSION_RECORD_SCHEMA,
        "acpx_record_id": record.record_id,
        "acp_session_id": record.acp_session_id,
        "agent_session_id": record.agent_session_id,
        "agent_command": record.agent_command,
        "cwd": record.cwd,
        "name": record.name,
        "created_at": record.created_at,
        "last_used_at": record.last_used_at,
        "last_seq": record.last_seq,
        "last_request_id": record.last_request_id,
        "event_log": {
            "active_path": record.event_log.active_path,
            "segment_count": record.event_log.segment_count,
            "max_segment_bytes": record.event_log.max_segment_bytes,
            "max_segments": record.event_log.max_segments,
            "last_write_at": record.event_log.last_write_at,
            "last_write_error": record.event_log.last_write_error,
        },
        "closed": record.closed,
        "closed_at": record.closed_at,
        "pid": record.pid,
        "agent_started_at": record.agent_started_at,
        "last_prompt_at": record.last_prompt_at,
        "last_agent_exit_code": record.last_agent_exit_code,
        "last_agent_exit_signal": record.last_agent_exit_signal,
        "last_agent_exit_at": record.last_agent_exit_at,
        "last_agent_disconnect_reason": record.last_agent_disconnect_reason,
        "protocol_version": record.protocol_version,
        "agent_capabilities": record.agent_capabilities,
        "title": conversation.title,
        "messages": [_serialize_message(m) for m in conversation.messages],
        "updated_at": conversation.updated_at,
        "cumulative_token_usage": conversation.cumulative_token_usage.to_dict(),
        "request_token_usage": {
            key: usage.to_dict() for key, usage in conversation.request_token_usage.items()
        },
        "acpx": {
            "current_mode_id": record.acpx.current_mode_id,
            "available_commands": record.acpx.available_commands,
            "config_options": record.acpx.config_options,
        },
        "acp_projection": _serialize_projection(record.projection),
    }


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------


def _as_dict(value: Any) -> dict | None:
    return value if isinstance(value, dict) else None


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _opt_str(value: Any):
    """None for absent, the string, or _INVALID."""
    if value is None:
        return None
    return value if isinstance(value, str) else _INVALID


def _opt_name(value: Any):
    if value is None:
        return None
    if not isinstance(value, str):
        return _INVALID
    value = value.strip()
    return value or None


def _opt_pid(value: Any):
    if value is None:
        return None
    if not _is_int(value) or value <= 0:
        return _INVALID
    return value


def _opt_int(value: Any):
    if value is None:
        return None
    return value if _is_int(value) else _INVALID


def _opt_bool(value: Any, default: bool = False):
    if value is None:
        return default
    return value if isinstance(value, bool) else _INVALID


def _count(value: Any) -> int:
    if _is_int(value) and value >= 0:
        return value
    if isinstance(value, float) and math.isfinite(value) and value >= 0:
        return int(value)
    return 0


def parse_token_usage(raw: Any) -> TokenUsage:
    """Lenient token usage parse; malformed components count as zero."""
    source = _as_dict(raw) or {}
    return TokenUsage(**{name: _count(source.get(name)) for name in TOKEN_USAGE_FIELDS})


def _parse_user(raw: dict) -> UserMessage | None:
    if not isinstance(raw.get("id"), str):
        return None
    content = raw.get("content")
    if isinstance(content, str):
        return UserMessage(id=raw["id"], text=content)
    if not isinstance(content, list):
        return None
    parts: list[str] = []
    for entry in content:
        entry = _as_dict(entry) or {}
        if isinstance(entry.get("Text"), str):
            parts.append(entry["Text"])
        elif isinstance(_as_dict(entry.get("Mention")), dict):
            mention = entry["Mention"]
            parts.append(str(mention.get("content") or mention.get("uri") or ""))
    return UserMessage(id=raw["id"], text="".join(parts))


def _parse_agent_content(raw: Any):
    entry = _as_dict(raw)
    if entry is None:
        return None
    if isinstance(entry.get("Text"), str):
        return TextContent(text=entry["Text"])
    thinking = _as_dict(entry.get("Thinking"))
    if thinking is not None and isinstance(thinking.get("text"), str):
        return ThinkingContent(text=thinking["text"])
    tool = _as_dict(entry.get("ToolUse"))
    if tool is not None and isinstance(tool.get("id"), str):
        return ToolUse(
            id=tool["id"],
            name=tool.get("name") if isinstance(tool.get("name"), str) else "tool_call",
            raw_input=tool.get("raw_input") if isinstance(tool.get("raw_input"), str) else "{}",
            input=tool.get("input", {}),
            is_input_complete=bool(tool.get("is_input_complete", False)),
        )
    return None


def _parse_tool_result(key: str, raw: Any) -> ToolResult | None:
    entry = _as_dict(raw)
    if entry is None:
        return None
    content = entry.get("content")
    if isinstance(content, dict):
        content = content.get("Text", "")
    return ToolResult(
        tool_use_id=entry.get("tool_use_id") if isinstance(entry.get("tool_use_id"), str) else key,
        tool_name=entry.get("tool_name") if isinstance(entry.get("tool_name"), str) else "tool_call",
        is_error=bool(entry.get("is_error", False)),
        content=content if isinstance(content, str) else "",
        output=entry.get("output"),
        status=entry.get("status") if isinstance(entry.get("status"), str) else None,
    )


def _parse_agent(raw: dict) -> AgentMessage | None:
    content = raw.get("content", [])
    if not isinstance(content, list):
        return None
    message = AgentMessage(
        id=raw["id"] if isinstance(raw.get("id"), str) else str(uuid.uuid4()),
    )
    for entry in content:
        parsed = _parse_agent_content(entry)
        if parsed is not None:
            message.content.append(parsed)
    for key, value in (_as_dict(raw.get("tool_results")) or {}).items():
        result = _parse_tool_result(key, value)
        if result is not None:
            message.tool_results[key] = result
    return message


def _parse_messages(raw: Any) -> list[Message] | None:
    if raw is None:
        return []
    if not isinstance(raw, list):
        return None
    messages: list[Message] = []
    for entry in raw:
        if entry == "Resume":
            continue
        entry = _as_dict(entry)
        if entry is None:
            return None
        if "User" in entry:
            user = _as_dict(entry["User"])
            parsed = _parse_user(user) if user is not None else None
        elif "Agent" in entry:
            agent = _as_dict(entry["Agent"])
            parsed = _parse_agent(agent) if agent is not None else None
        else:
            parsed = None
        if parsed is None:
            return None
        messages.append(parsed)
    return messages


def _parse_state(raw: Any) -> SessionState:
    source = _as_dict(raw) or {}
    commands = source.get("available_commands")
    return SessionState(
        current_mode_id=(
            source["current_mode_id"] if isinstance(source.get("current_mode_id"), str) else None
        ),
        available_commands=(
            list(commands)
            if isinstance(commands, list) and all(isinstance(c, str) for c in commands)
            else None
        ),
        config_options=source.get("config_options"),
    )


def _parse_event_log(raw: Any, session_dir: Path | None, record_id: str) -> EventLog:
    default = default_event_log(session_dir or Path("."), record_id)
    source = _as_dict(raw)
    if source is None:
        return default
    if not isinstance(source.get("active_path"), str):
        return default
    for key in ("segment_count", "max_segment_bytes", "max_segments"):
        if not _is_int(source.get(key)) or source[key] < 1:
            return default
    return EventLog(
        active_path=source["active_path"],
        segment_count=source["segment_count"],
        max_segment_bytes=source["max_segment_bytes"],
        max_segments=source["max_segments"],
        last_write_at=source["last_write_at"] if isinstance(source.get("last_write_at"), str) else None,
        last_write_error=(
            source["last_write_error"] if isinstance(source.get("last_write_error"), str) else None
        ),
    )


def _parse_operation(raw: Any) -> ClientOperation | None:
    source = _as_dict(raw)
    if source is None:
        return None
    return ClientOperation(
        method=str(source.get("method", "")),
        status=str(source.get("status", "")),
        summary=str(source.get("summary", "")),
        timestamp=str(source.get("timestamp", "")),
        details=source.get("details") if isinstance(source.get("details"), str) else None,
    )


def _parse_projection(raw: Any) -> AcpProjection:
    source = _as_dict(raw)
    if source is None:
        return AcpProjection()

    projection = AcpProjection()
    for entry in _as_list(source.get("events")):
        entry = _as_dict(entry)
        if entry is None or not isinstance(entry.get("type"), str):
            continue
        projection.events.append(
            ProjectionEvent(
                type=entry["type"],
                timestamp=str(entry.get("timestamp", "")),
                update=_as_dict(entry.get("update")),
                meta=entry.get("_meta"),
                operation=_parse_operation(entry.get("operation")),
            )
        )

    for entry in _as_list(source.get("tool_calls")):
        entry = _as_dict(entry)
        if entry is None or not isinstance(entry.get("tool_call_id"), str):
            continue
        projection.tool_calls.append(
            ToolCallSnapshot(
                tool_call_id=entry["tool_call_id"],
                updated_at=str(entry.get("updated_at", "")),
                title=entry.get("title"),
                status=entry.get("status"),
                kind=entry.get("kind"),
                locations=entry.get("locations"),
                content=entry.get("content"),
                raw_input=entry.get("raw_input"),
                raw_output=entry.get("raw_output"),
            )
        )

    plan = source.get("plan")
    if isinstance(plan, list):
        projection.plan = [
            PlanEntry(
                content=str(p.get("content", "")),
                status=str(p.get("status", "")),
                priority=str(p.get("priority", "")),
            )
            for p in plan
            if isinstance(p, dict)
        ]

    commands = source.get("available_commands")
    if isinstance(commands, list):
        projection.available_commands = [c for c in commands if isinstance(c, str)]
    if isinstance(source.get("current_mode_id"), str):
        projection.current_mode_id = source["current_mode_id"]
    projection.config_options = source.get("config_options")
    if isinstance(source.get("session_title"), str):
        projection.session_title = source["session_title"]
    if isinstance(source.get("session_updated_at"), str):
        projection.session_updated_at = source["session_updated_at"]

    usage = _as_dict(source.get("usage"))
    if usage is not None:
        projection.usage = UsageSnapshot(
            used=usage.get("used"),
            size=usage.get("size"),
            cost_amount=usage.get("cost_amount"),
            cost_currency=usage.get("cost_currency"),
        )
    return projection


def parse_session_record(raw: Any, session_dir: Path | None = None) -> SessionRecord | None:
    """Parse an on-disk document. Returns None when it is not a valid record.

    session_dir is used only to build a default event-log pointer for
    documents written before the pointer existed.
    """
    record = _as_dict(raw)
    if record is None or record.get("schema") != SESSION_RECORD_SCHEMA:
        return None

    for key in ("acpx_record_id", "acp_session_id", "agent_command", "cwd", "created_at", "last_used_at"):
        if not isinstance(record.get(key), str):
            return None
    last_seq = record.get("last_seq", 0)
    if not _is_int(last_seq) or last_seq < 0:
        return None

    optional = {
        "name": _opt_name(record.get("name")),
        "pid": _opt_pid(record.get("pid")),
        "closed": _opt_bool(record.get("closed")),
        "closed_at": _opt_str(record.get("closed_at")),
        "agent_started_at": _opt_str(record.get("agent_started_at")),
        "last_prompt_at": _opt_str(record.get("last_prompt_at")),
        "last_agent_exit_code": _opt_int(record.get("last_agent_exit_code")),
        "last_agent_exit_signal": _opt_str(record.get("last_agent_exit_signal")),
        "last_agent_exit_at": _opt_str(record.get("last_agent_exit_at")),
        "last_agent_disconnect_reason": _opt_str(record.get("last_agent_disconnect_reason")),
        "last_request_id": _opt_str(record.get("last_request_id")),
    }
    if any(value is _INVALID for value in optional.values()):
        return None

    messages = _parse_messages(record.get("messages"))
    if messages is None:
        return None
    title = record.get("title")
    request_usage = _as_dict(record.get("request_token_usage")) or {}

    agent_session_id = record.get("agent_session_id")
    if not isinstance(agent_session_id, str) or not agent_session_id.strip():
        agent_session_id = None

    conversation = Conversation(
        updated_at=(
            record["updated_at"] if isinstance(record.get("updated_at"), str) else record["last_used_at"]
        ),
        title=title if isinstance(title, str) else None,
        messages=messages,
        cumulative_token_usage=parse_token_usage(record.get("cumulative_token_usage")),
        request_token_usage={
            str(key): parse_token_usage(value) for key, value in request_usage.items()
        },
    )

    return SessionRecord(
        record_id=record["acpx_record_id"],
        acp_session_id=record["acp_session_id"],
        agent_session_id=agent_session_id,
        agent_command=record["agent_command"],
        cwd=record["cwd"],
        created_at=record["created_at"],
        last_used_at=record["last_used_at"],
        last_seq=last_seq,
        event_log=_parse_event_log(record.get("event_log"), session_dir, record["acpx_record_id"]),
        conversation=conversation,
        protocol_version=(
            record["protocol_version"] if _is_int(record.get("protocol_version")) else None
        ),
        agent_capabilities=_as_dict(record.get("agent_capabilities")),
        acpx=_parse_state(record.get("acpx")),
        projection=_parse_projection(record.get("acp_projection")),
        **optional,
    )
