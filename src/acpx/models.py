"""Shared data models — the contract between the reducers, the codec and the registry.

The reducers (projection.py, conversation.py) mutate these objects in place.
The codec (codec.py) is the only place that knows the on-disk shape.
Timestamps are ISO-8601 UTC strings (see iso_now) so they sort lexically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

SESSION_RECORD_SCHEMA = "acpx.session.v1"

DEFAULT_EVENT_SEGMENT_MAX_BYTES = 1024 * 1024
DEFAULT_EVENT_MAX_SEGMENTS = 5


def iso_now() -> str:
    """Current UTC time, millisecond precision, Z suffix."""
    now = datetime.now(tz=timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


# ---------------------------------------------------------------------------
# Conversation (transcript)
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    """Token counters for one turn or for the whole conversation.

    Missing components are zero; deltas are summed, never replaced.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
        }


@dataclass
class UserMessage:
    id: str
    text: str


@dataclass
class TextContent:
    text: str


@dataclass
class ThinkingContent:
    text: str


@dataclass
class ToolUse:
    """A tool invocation embedded in an agent message, keyed by tool-call id."""

    id: str
    name: str = "tool_call"
    raw_input: str = "{}"  # JSON rendering of `input`
    input: Any = field(default_factory=dict)
    is_input_complete: bool = False


@dataclass
class ToolResult:
    tool_use_id: str
    tool_name: str = "tool_call"
    is_error: bool = False
    content: str = ""  # text rendering of `output`
    output: Any = None
    status: str | None = None


AgentContent = Union[TextContent, ThinkingContent, ToolUse]


@dataclass
class AgentMessage:
    id: str
    content: list[AgentContent] = field(default_factory=list)
    tool_results: dict[str, ToolResult] = field(default_factory=dict)


Message = Union[UserMessage, AgentMessage]


@dataclass
class Conversation:
    """Message-oriented transcript plus token accounting."""

    updated_at: str
    title: str | None = None
    messages: list[Message] = field(default_factory=list)
    cumulative_token_usage: TokenUsage = field(default_factory=TokenUsage)
    # user message id -> usage attributed to that turn
    request_token_usage: dict[str, TokenUsage] = field(default_factory=dict)


@dataclass
class SessionState:
    """Internal state persisted under the ``acpx`` namespace of the record."""

    current_mode_id: str | None = None
    available_commands: list[str] | None = None
    config_options: Any = None


# ---------------------------------------------------------------------------
# Projection (raw event log + tool-call table)
# ---------------------------------------------------------------------------


@dataclass
class ClientOperation:
    """A client-side operation performed on behalf of the agent (fs, terminal)."""

    method: str  # fs/read_text_file, fs/write_text_file, terminal/create, ...
    status: str  # running, completed, failed
    summary: str
    timestamp: str
    details: str | None = None


@dataclass
class ProjectionEvent:
    type: str  # session_update, client_operation
    timestamp: str
    update: dict[str, Any] | None = None
    meta: Any = None
    operation: ClientOperation | None = None


@dataclass
class ToolCallSnapshot:
    """Latest known state of one tool call, merged from create/patch updates."""

    tool_call_id: str
    updated_at: str
    title: str | None = None
    status: str | None = None
    kind: str | None = None
    locations: Any = None
    content: Any = None
    raw_input: Any = None
    raw_output: Any = None


@dataclass
class PlanEntry:
    content: str
    status: str
    priority: str


@dataclass
class UsageSnapshot:
    used: Any = None
    size: Any = None
    cost_amount: float | None = None
    cost_currency: str | None = None


@dataclass
class AcpProjection:
    events: list[ProjectionEvent] = field(default_factory=list)
    tool_calls: list[ToolCallSnapshot] = field(default_factory=list)
    plan: list[PlanEntry] | None = None
    available_commands: list[str] | None = None
    current_mode_id: str | None = None
    config_options: Any = None
    session_title: str | None = None
    session_updated_at: str | None = None
    usage: UsageSnapshot | None = None


# ---------------------------------------------------------------------------
# Session record
# ---------------------------------------------------------------------------


@dataclass
class EventLog:
    """Pointer to the session's NDJSON event stream (see event_log.py)."""

    active_path: str
    segment_count: int = 1
    max_segment_bytes: int = DEFAULT_EVENT_SEGMENT_MAX_BYTES
    max_segments: int = DEFAULT_EVENT_MAX_SEGMENTS
    last_write_at: str | None = None
    last_write_error: str | None = None


@dataclass
class SessionRecord:
    """Durable state of one agent session.

    Produced by session.create_session, persisted by registry.write_session_record.
    """

    record_id: str  # registry key, immutable
    acp_session_id: str
    agent_command: str
    cwd: str  # absolute, resolved
    created_at: str
    last_used_at: str
    event_log: EventLog
    conversation: Conversation
    agent_session_id: str | None = None
    name: str | None = None
    last_seq: int = 0
    last_request_id: str | None = None
    closed: bool = False
    closed_at: str | None = None
    pid: int | None = None
    agent_started_at: str | None = None
    last_prompt_at: str | None = None
    last_agent_exit_code: int | None = None
    last_agent_exit_signal: str | None = None
    last_agent_exit_at: str | None = None
    last_agent_disconnect_reason: str | None = None
    protocol_version: int | None = None
    agent_capabilities: dict[str, Any] | None = None
    acpx: SessionState = field(default_factory=SessionState)
    projection: AcpProjection = field(default_factory=AcpProjection)


@dataclass
class HistoryEntry:
    role: str  # user, assistant
    timestamp: str
    text_preview: str
