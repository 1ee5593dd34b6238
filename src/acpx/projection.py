"""Conversation projection — capped raw event log plus a tool-call table.

Every call appends exactly one event; nothing is reordered or deduplicated.
Both collections are trimmed from the oldest end. Payloads are deep-copied on
the way in so later mutation by the caller cannot reach stored state.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from typing import Any, Callable

from acpx.models import (
    AcpProjection,
    ClientOperation,
    PlanEntry,
    ProjectionEvent,
    ToolCallSnapshot,
    UsageSnapshot,
    iso_now,
)

logger = logging.getLogger(__name__)

SESSION_EVENTS_MAX_ENTRIES = 10_000
SESSION_TOOL_CALLS_MAX_ENTRIES = 512

# protocol field -> snapshot attribute
_TOOL_CALL_FIELDS = {
    "title": "title",
    "status": "status",
    "kind": "kind",
    "locations": "locations",
    "content": "content",
    "rawInput": "raw_input",
    "rawOutput": "raw_output",
}


def deep_copy(value: Any) -> Any:
    """Deep copy, or the value itself if it cannot be copied."""
    try:
        return copy.deepcopy(value)
    except (TypeError, copy.Error, RecursionError) as exc:
        logger.debug("Storing uncopyable payload by reference: %s", exc)
        return value


def _trim(entries: list, maximum: int) -> None:
    overflow = len(entries) - maximum
    if overflow > 0:
        del entries[:overflow]


def _add_event(projection: AcpProjection, event: ProjectionEvent) -> None:
    projection.events.append(event)
    _trim(projection.events, SESSION_EVENTS_MAX_ENTRIES)


def apply_tool_call_patch(
    current: ToolCallSnapshot | None,
    update: dict[str, Any],
    timestamp: str,
) -> ToolCallSnapshot:
    """Merge a tool_call / tool_call_update payload into the previous snapshot.

    Present fields overwrite (null clears), absent fields keep their value.
    """
    if current is None:
        snapshot = ToolCallSnapshot(tool_call_id=update["toolCallId"], updated_at=timestamp)
    else:
        snapshot = dataclasses.replace(
            current,
            locations=deep_copy(current.locations),
            content=deep_copy(current.content),
            updated_at=timestamp,
        )

    for key, attr in _TOOL_CALL_FIELDS.items():
        if key in update:
            value = update[key]
            setattr(snapshot, attr, None if value is None else deep_copy(value))
    return snapshot


def _find_tool_call(projection: AcpProjection, tool_call_id: str) -> int:
    for index, entry in enumerate(projection.tool_calls):
        if entry.tool_call_id == tool_call_id:
            return index
    return -1


def _upsert_tool_call(projection: AcpProjection, snapshot: ToolCallSnapshot) -> None:
    index = _find_tool_call(projection, snapshot.tool_call_id)
    if index == -1:
        projection.tool_calls.append(snapshot)
        _trim(projection.tool_calls, SESSION_TOOL_CALLS_MAX_ENTRIES)
    else:
        projection.tool_calls[index] = snapshot


# ---------------------------------------------------------------------------
# Per-variant handlers
# ---------------------------------------------------------------------------


def _on_tool_call(projection: AcpProjection, update: dict, timestamp: str) -> None:
    tool_call_id = update.get("toolCallId")
    if not isinstance(tool_call_id, str):
        return
    index = _find_tool_call(projection, tool_call_id)
    current = projection.tool_calls[index] if index != -1 else None
    _upsert_tool_call(projection, apply_tool_call_patch(current, update, timestamp))


def _on_plan(projection: AcpProjection, update: dict, timestamp: str) -> None:
    projection.plan = [
        PlanEntry(
            content=str(entry.get("content", "")),
            status=str(entry.get("status", "")),
            priority=str(entry.get("priority", "")),
        )
        for entry in update.get("entries") or []
        if isinstance(entry, dict)
    ]


def command_names(update: dict) -> list[str]:
    """Names from an available_commands_update, dropping empty or non-string ones."""
    names = []
    for command in update.get("availableCommands") or []:
        name = command.get("name") if isinstance(command, dict) else None
        if isinstance(name, str) and name.strip():
            names.append(name)
    return names


def _on_available_commands(projection: AcpProjection, update: dict, timestamp: str) -> None:
    projection.available_commands = command_names(update)


def _on_current_mode(projection: AcpProjection, update: dict, timestamp: str) -> None:
    mode = update.get("currentModeId")
    projection.current_mode_id = mode if isinstance(mode, str) else None


def _on_config_options(projection: AcpProjection, update: dict, timestamp: str) -> None:
    projection.config_options = deep_copy(update.get("configOptions"))


def _is_text_or_none(value: Any) -> bool:
    return value is None or isinstance(value, str)


def _on_session_info(projection: AcpProjection, update: dict, timestamp: str) -> None:
    # non-string values are dropped; the stored record only keeps strings
    if "title" in update and _is_text_or_none(update["title"]):
        projection.session_title = update["title"]
    if "updatedAt" in update and _is_text_or_none(update["updatedAt"]):
        projection.session_updated_at = update["updatedAt"]


def _on_usage(projection: AcpProjection, update: dict, timestamp: str) -> None:
    cost = update.get("cost") if isinstance(update.get("cost"), dict) else {}
    amount = cost.get("amount")
    currency = cost.get("currency")
    projection.usage = UsageSnapshot(
        used=update.get("used"),
        size=update.get("size"),
        cost_amount=(
            amount
            if isinstance(amount, (int, float)) and not isinstance(amount, bool)
            else None
        ),
        cost_currency=currency if isinstance(currency, str) else None,
    )


_UPDATE_HANDLERS: dict[str, Callable[[AcpProjection, dict, str], None]] = {
    "tool_call": _on_tool_call,
    "tool_call_update": _on_tool_call,
    "plan": _on_plan,
    "available_commands_update": _on_available_commands,
    "current_mode_update": _on_current_mode,
    "config_option_update": _on_config_options,
    "session_info_update": _on_session_info,
    "usage_update": _on_usage,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def record_session_update(
    projection: AcpProjection,
    update: dict[str, Any],
    timestamp: str | None = None,
    meta: Any = None,
) -> None:
    """Append a session_update event and fold the update into derived state.

    Unknown ``sessionUpdate`` tags are still logged as events.
    """
    timestamp = timestamp or iso_now()
    _add_event(
        projection,
        ProjectionEvent(
            type="session_update",
            timestamp=timestamp,
            update=deep_copy(update),
            meta=deep_copy(meta),
        ),
    )
    handler = _UPDATE_HANDLERS.get(update.get("sessionUpdate"))
    if handler is not None:
        handler(projection, update, timestamp)


def record_client_operation(
    projection: AcpProjection,
    operation: ClientOperation,
    timestamp: str | None = None,
) -> None:
    _add_event(
        projection,
        ProjectionEvent(
            type="client_operation",
            timestamp=timestamp or iso_now(),
            operation=deep_copy(operation),
        ),
    )
