"""Tests for the snake_case persisted-key policy."""

import pytest

from acpx.codec import serialize_session_record
from acpx.errors import PersistedKeyPolicyError
from acpx.persisted_keys import (
    assert_persisted_key_policy,
    find_persisted_key_policy_violations,
)


def test_snake_case_document_passes():
    assert find_persisted_key_policy_violations({"a_b": {"c1": [{"d_e": 1}]}}) == []


def test_camel_case_keys_reported_with_paths():
    doc = {"eventLog": {}, "event_log": {"activePath": "x"}, "items": [{"fooBar": 1}]}
    violations = find_persisted_key_policy_violations(doc)
    assert violations == ["eventLog", "event_log.activePath", "items.fooBar"]


def test_transcript_tags_allowed():
    doc = {
        "messages": [
            {"User": {"id": "u1", "content": [{"Text": "hi"}]}},
            {"Agent": {"content": [{"Thinking": {"text": "t"}}], "tool_results": {}}},
        ]
    }
    assert find_persisted_key_policy_violations(doc) == []


def test_map_objects_keys_are_data():
    doc = {
        "request_token_usage": {"User-Id-ABC": {"input_tokens": 1}},
        "messages": [{"Agent": {"tool_results": {"callID-1": {"tool_use_id": "callID-1"}}}}],
    }
    assert find_persisted_key_policy_violations(doc) == []


def test_map_object_values_still_checked():
    doc = {"request_token_usage": {"u1": {"inputTokens": 1}}}
    assert find_persisted_key_policy_violations(doc) == ["request_token_usage.u1.inputTokens"]


def test_opaque_protocol_payloads_not_descended():
    doc = {
        "agent_capabilities": {"loadSession": True},
        "acp_projection": {
            "events": [
                {"type": "session_update", "update": {"sessionUpdate": "plan"}, "_meta": {"traceId": 1}}
            ],
            "tool_calls": [{"raw_input": {"filePath": "/x"}, "raw_output": {"exitCode": 0}}],
        },
        "messages": [
            {
                "Agent": {
                    "content": [{"ToolUse": {"input": {"someArg": 1}}}],
                    "tool_results": {"call_1": {"output": {"exitCode": 0}}},
                }
            }
        ],
    }
    assert find_persisted_key_policy_violations(doc) == []


def test_meta_only_allowed_on_projection_events():
    assert find_persisted_key_policy_violations({"_meta": {}}) == ["_meta"]


def test_assert_raises_policy_error():
    with pytest.raises(PersistedKeyPolicyError, match="expected snake_case keys") as excinfo:
        assert_persisted_key_policy({"lastSeq": 1})
    assert excinfo.value.violations == ["lastSeq"]
    assert isinstance(excinfo.value, ValueError)


def test_serialized_record_has_no_violations(make_record):
    """A populated record serializes to a document that passes the policy."""
    record = make_record(agent_capabilities={"promptCapabilities": {"image": True}})
    assert find_persisted_key_policy_violations(serialize_session_record(record)) == []
