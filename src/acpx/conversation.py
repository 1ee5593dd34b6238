"""Conversation model: folds protocol updates into a message transcript.

The transcript is lossy and meant for rendering. Mode, command and config
updates do not belong to it; they mutate the SessionState passed in by the
caller, which is returned so it can be stored at the top of the record.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from typing import Any, Callable

from acpx.models import (
    AgentMessage,
    ClientOperation,
    Conversation,
    SessionState,
    TextContent,
    ThinkingContent,
    TokenUsage,
    ToolResult,
    ToolUse,
    UserMessage,
    iso_now,
)
from acpx.projection import command_names, deep_copy

logger = logging.getLogger(__name__)

PLACEHOLDER_TOOL_NAME = "tool_call"

_COMPLETE_MARKERS = ("complete", "done", "success", "failed", "error", "cancel")
_ERROR_MARKERS = ("fail", "error")

# TokenUsage field -> accepted spellings, first well-formed one wins
_USAGE_KEYS = {
    "input_tokens": ("input_tokens", "inputTokens"),
    "output_tokens": ("output_tokens", "outputTokens"),
    "cache_creation_input_tokens": (
        "cache_creation_input_tokens",
        "cacheCreationInputTokens",
        "cachedWriteTokens",
    ),
    "cache_read_input_tokens": (
        "cache_read_input_tokens",
        "cacheReadInputTokens",
        "cachedReadTokens",
    ),
}


def create_conversation(timestamp: str | None = None) -> Conversation:
    return Conversation(updated_at=timestamp or iso_now())


def extract_text(content: Any) -> str | None:
    """Plain text carried by a content block, if any.

    Text blocks give their text; resource links give title, name or uri;
    embedded resources give their text or, failing that, their uri.
    """
    if not isinstance(content, dict):
        return None
    kind = content.get("type")
    if kind == "text":
        text = content.get("text")
        return text if isinstance(text, str) else None
    if kind == "resource_link":
        for key in ("title", "name", "uri"):
            if isinstance(content.get(key), str):
                return content[key]
        return None
    if kind == "resource":
        resource = content.get("resource")
        if not isinstance(resource, dict):
            return None
        if isinstance(resource.get("text"), str):
            return resource["text"]
        uri = resource.get("uri")
        return uri if isinstance(uri, str) else None
    return None


def _ensure_agent_message(conversation: Conversation) -> AgentMessage:
    if conversation.messages and isinstance(conversation.messages[-1], AgentMessage):
        return conversation.messages[-1]
    message = AgentMessage(id=str(uuid.uuid4()))
    conversation.messages.append(message)
    return message


def _append_text(agent: AgentMessage, text: str, kind: type) -> None:
    if not text.strip():
        return
    if agent.content and isinstance(agent.content[-1], kind):
        agent.content[-1].text += text
    else:
        agent.content.append(kind(text=text))


def _last_user_message_id(conversation: Conversation) -> str | None:
    for message in reversed(conversation.messages):
        if isinstance(message, UserMessage):
            return message.id
    return None


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


def _status_has(status: Any, markers: tuple[str, ...]) -> bool:
    if not isinstance(status, str):
        return False
    lowered = status.lower()
    return any(marker in lowered for marker in markers)


def _clean_name(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def _ensure_tool_use(agent: AgentMessage, tool_call_id: str) -> ToolUse:
    for entry in agent.content:
        if isinstance(entry, ToolUse) and entry.id == tool_call_id:
            return entry
    tool = ToolUse(id=tool_call_id)
    agent.content.append(tool)
    return tool


def _apply_tool_call(agent: AgentMessage, update: dict) -> None:
    tool_call_id = update["toolCallId"]
    tool = _ensure_tool_use(agent, tool_call_id)

    if "title" in update:
        tool.name = _clean_name(update["title"]) or tool.name
    if "kind" in update and tool.name == PLACEHOLDER_TOOL_NAME:
        tool.name = _clean_name(update["kind"]) or tool.name
    if "rawInput" in update:
        raw_input = deep_copy(update["rawInput"])
        tool.input = {} if raw_input is None else raw_input
        tool.raw_input = _render(tool.input)
    if "status" in update:
        tool.is_input_complete = _status_has(update["status"], _COMPLETE_MARKERS)

    if not any(key in update for key in ("rawOutput", "status", "title", "kind")):
        return

    result = agent.tool_results.get(tool_call_id) or ToolResult(tool_use_id=tool_call_id)
    result.tool_name = tool.name
    if "status" in update:
        result.status = update["status"] if isinstance(update["status"], str) else None
        result.is_error = _status_has(update["status"], _ERROR_MARKERS)
    if "rawOutput" in update:
        result.output = deep_copy(update["rawOutput"])
        result.content = _render(result.output)
    agent.tool_results[tool_call_id] = result


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


def _count(source: dict, keys: tuple[str, ...]) -> int | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if math.isfinite(value) and value >= 0:
            return int(value)
    return None


def usage_from_update(update: dict) -> TokenUsage | None:
    """Token delta carried by a usage_update, or None if it carries no counters.

    Counters are read from ``_meta.usage`` when present, else from the update.
    """
    meta = update.get("_meta")
    usage = meta.get("usage") if isinstance(meta, dict) else None
    source = usage if isinstance(usage, dict) else update

    counts = {field: _count(source, keys) for field, keys in _USAGE_KEYS.items()}
    if all(value is None for value in counts.values()):
        return None
    return TokenUsage(**{field: value or 0 for field, value in counts.items()})


# ---------------------------------------------------------------------------
# Per-variant handlers
# ---------------------------------------------------------------------------


def _on_user_chunk(conversation: Conversation, state: SessionState, update: dict) -> None:
    text = extract_text(update.get("content"))
    if text:
        conversation.messages.append(UserMessage(id=str(uuid.uuid4()), text=text))


def _on_agent_chunk(conversation: Conversation, state: SessionState, update: dict) -> None:
    text = extract_text(update.get("content"))
    if text:
        _append_text(_ensure_agent_message(conversation), text, TextContent)


def _on_thought_chunk(conversation: Conversation, state: SessionState, update: dict) -> None:
    text = extract_text(update.get("content"))
    if text:
        _append_text(_ensure_agent_message(conversation), text, ThinkingContent)


def _on_tool_call(conversation: Conversation, state: SessionState, update: dict) -> None:
    if not isinstance(update.get("toolCallId"), str):
        return
    _apply_tool_call(_ensure_agent_message(conversation), update)


def _on_usage(conversation: Conversation, state: SessionState, update: dict) -> None:
    delta = usage_from_update(update)
    if delta is None:
        return
    conversation.cumulative_token_usage.add(delta)
    user_id = _last_user_message_id(conversation)
    if user_id is None:
        logger.debug("Usage update before any prompt; counted in total only")
        return
    conversation.request_token_usage.setdefault(user_id, TokenUsage()).add(delta)


def _on_session_info(conversation: Conversation, state: SessionState, update: dict) -> None:
    title = update.get("title")
    if "title" in update and (title is None or isinstance(title, str)):
        conversation.title = title


def _on_available_commands(conversation: Conversation, state: SessionState, update: dict) -> None:
    state.available_commands = command_names(update)


def _on_current_mode(conversation: Conversation, state: SessionState, update: dict) -> None:
    mode = update.get("currentModeId")
    state.current_mode_id = mode if isinstance(mode, str) else None


def _on_config_options(conversation: Conversation, state: SessionState, update: dict) -> None:
    state.config_options = deep_copy(update.get("configOptions"))


_UPDATE_HANDLERS: dict[str, Callable[[Conversation, SessionState, dict], None]] = {
    "user_message_chunk": _on_user_chunk,
    "agent_message_chunk": _on_agent_chunk,
    "agent_thought_chunk": _on_thought_chunk,
    "tool_call": _on_tool_call,
    "tool_call_update": _on_tool_call,
    "usage_update": _on_usage,
    "session_info_update": _on_session_info,
    "available_commands_update": _on_available_commands,
    "current_mode_update": _on_current_mode,
    "config_option_update": _on_config_options,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def record_prompt_submission(
    conversation: Conversation,
    prompt: str,
    timestamp: str | None = None,
) -> UserMessage | None:
    """Append the prompt as a new user message. Blank prompts are ignored."""
    text = prompt.strip()
    if not text:
        return None
    message = UserMessage(id=str(uuid.uuid4()), text=text)
    conversation.messages.append(message)
    conversation.updated_at = timestamp or iso_now()
    return message


def record_session_update(
    conversation: Conversation,
    state: SessionState | None,
    update: dict[str, Any],
    timestamp: str | None = None,
) -> SessionState:
    state = state if state is not None else SessionState()
    handler = _UPDATE_HANDLERS.get(update.get("sessionUpdate"))
    if handler is not None:
        handler(conversation, state, update)
    conversation.updated_at = timestamp or iso_now()
    return state


def record_client_operation(
    conversation: Conversation,
    state: SessionState | None,
    operation: ClientOperation,
    timestamp: str | None = None,
) -> SessionState:
    conversation.updated_at = timestamp or iso_now()
    return state if state is not None else SessionState()
