"""Persisted-key policy — every key written to disk is flat snake_case.

A few places are exempt:
  * transcript variant tags (``User``, ``Agent``, ``Text``, ...),
  * map objects whose keys are data (tool-call ids, user message ids),
  * opaque protocol payloads stored verbatim (raw tool input/output, updates).

A violation is a programming defect, so assert_persisted_key_policy raises
instead of rewriting the document.
"""

from __future__ import annotations

import re
from typing import Any

from acpx.errors import PersistedKeyPolicyError

SNAKE_CASE_KEY = re.compile(r"^[a-z][a-z0-9_]*$")

TAG_KEYS = frozenset(
    {
        "User",
        "Agent",
        "Resume",
        "Text",
        "Mention",
        "Image",
        "Thinking",
        "RedactedThinking",
        "ToolUse",
    }
)

# Objects whose keys are identifiers, not field names.
MAP_OBJECT_PATHS = frozenset(
    {
        "request_token_usage",
        "messages.Agent.tool_results",
    }
)

# Values stored as received; their inner keys belong to the protocol.
OPAQUE_VALUE_PATHS = frozenset(
    {
        "agent_capabilities",
        "messages.Agent.content.ToolUse.input",
        "acpx.config_options",
        "acp_projection.config_options",
        "acp_projection.events.update",
        "acp_projection.events._meta",
        "acp_projection.tool_calls.locations",
        "acp_projection.tool_calls.content",
        "acp_projection.tool_calls.raw_input",
        "acp_projection.tool_calls.raw_output",
    }
)

_META_KEY_PATHS = frozenset({"acp_projection.events"})


def _join(path: list[str]) -> str:
    return ".".join(path)


def _is_allowed_key(path: list[str], key: str) -> bool:
    if key in TAG_KEYS:
        return True
    return key == "_meta" and _join(path) in _META_KEY_PATHS


def _is_tool_result_output(path: list[str]) -> bool:
    # messages.Agent.tool_results.<tool call id>.output
    if len(path) < 5 or path[-1] != "output":
        return False
    return _join(path[:-2]) == "messages.Agent.tool_results"


def _skip_descend(path: list[str]) -> bool:
    return _join(path) in OPAQUE_VALUE_PATHS or _is_tool_result_output(path)


def _collect(value: Any, path: list[str], violations: list[str]) -> None:
    if isinstance(value, list):
        for entry in value:
            _collect(entry, path, violations)
        return

    if not isinstance(value, dict):
        return

    skip_key_rule = _join(path) in MAP_OBJECT_PATHS
    for key, child in value.items():
        key = str(key)
        if not skip_key_rule and not SNAKE_CASE_KEY.match(key) and not _is_allowed_key(path, key):
            violations.append(_join([*path, key]))

        child_path = [*path, key]
        if _skip_descend(child_path):
            continue
        _collect(child, child_path, violations)


def find_persisted_key_policy_violations(value: Any) -> list[str]:
    """Return dotted paths of every key that breaks the policy."""
    violations: list[str] = []
    _collect(value, [], violations)
    return violations


def assert_persisted_key_policy(value: Any) -> None:
    violations = find_persisted_key_policy_violations(value)
    if violations:
        raise PersistedKeyPolicyError(violations)
