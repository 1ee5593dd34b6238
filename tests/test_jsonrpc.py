"""Tests for JSON-RPC error envelopes and upstream error detection."""

import pytest

from acpx.errors import PermissionDeniedError, SessionNotFoundError, SessionResolutionError
from acpx.jsonrpc import (
    OUTPUT_ERROR_JSONRPC_CODES,
    build_jsonrpc_error_response,
    error_response_for,
    extract_acp_error,
    is_acp_resource_not_found_error,
)


class UpstreamError(Exception):
    def __init__(self, code, message, data=None):
        super().__init__(message)
        self.code = code
        self.data = data


class TestBuild:
    def test_internal_error(self):
        response = build_jsonrpc_error_response(
            "NO_SESSION",
            "No session found: x",
            id=7,
            detail_code="SESSION_AMBIGUOUS",
            origin="cli",
            retryable=False,
            session_id="x",
        )
        assert response == {
            "jsonrpc": "2.0",
            "id": 7,
            "error": {
                "code": -32002,
                "message": "No session found: x",
                "data": {
                    "acpxCode": "NO_SESSION",
                    "detailCode": "SESSION_AMBIGUOUS",
                    "origin": "cli",
                    "retryable": False,
                    "sessionId": "x",
                },
            },
        }

    @pytest.mark.parametrize("output_code, code", sorted(OUTPUT_ERROR_JSONRPC_CODES.items()))
    def test_code_table(self, output_code, code):
        assert build_jsonrpc_error_response(output_code, "m")["error"]["code"] == code

    def test_unknown_output_code_is_internal(self):
        assert build_jsonrpc_error_response("WHATEVER", "m")["error"]["code"] == -32603

    def test_valid_acp_error_passes_through(self):
        response = build_jsonrpc_error_response(
            "RUNTIME", "ignored", id="r1", acp={"code": -32001, "message": "gone", "data": {"x": 1}}
        )
        assert response["error"] == {"code": -32001, "message": "gone", "data": {"x": 1}}

    def test_acp_error_without_data(self):
        response = build_jsonrpc_error_response("RUNTIME", "ignored", acp={"code": 1, "message": "m", "data": None})
        assert response["error"] == {"code": 1, "message": "m"}

    @pytest.mark.parametrize(
        "acp",
        [{"code": "1", "message": "m"}, {"code": True, "message": "m"}, {"code": 1, "message": "  "}],
    )
    def test_malformed_acp_error_ignored(self, acp):
        response = build_jsonrpc_error_response("TIMEOUT", "slow", acp=acp)
        assert response["error"]["code"] == -32070
        assert response["error"]["message"] == "slow"


class TestErrorResponseFor:
    def test_session_not_found(self):
        response = error_response_for(SessionNotFoundError("abc"), id=1)
        assert response["error"]["code"] == -32002
        assert response["error"]["data"]["sessionId"] == "abc"
        assert response["error"]["data"]["origin"] == "cli"

    def test_ambiguous(self):
        exc = SessionResolutionError("ambiguous", session_id="a", candidates=["x-a", "y-a"])
        assert error_response_for(exc)["error"]["data"]["detailCode"] == "SESSION_AMBIGUOUS"

    def test_permission_denied(self):
        assert error_response_for(PermissionDeniedError("fs/write_text_file"))["error"]["code"] == -32071

    def test_plain_exception_is_runtime(self):
        response = error_response_for(RuntimeError("boom"))
        assert response["error"]["code"] == -32603
        assert response["error"]["data"] == {"acpxCode": "RUNTIME", "origin": "cli"}

    def test_upstream_cause_passes_through(self):
        try:
            try:
                raise UpstreamError(-32001, "Resource not found")
            except UpstreamError as upstream:
                raise RuntimeError("prompt failed") from upstream
        except RuntimeError as exc:
            response = error_response_for(exc, id=3)
        assert response["error"] == {"code": -32001, "message": "Resource not found"}


class TestExtract:
    def test_nested_error_field(self):
        assert extract_acp_error({"error": {"code": -32000, "message": "bad"}}) == {
            "code": -32000,
            "message": "bad",
            "data": None,
        }

    def test_depth_limited(self):
        error = {"code": 1, "message": "deep"}
        for _ in range(7):
            error = {"cause": error}
        assert extract_acp_error(error) is None

    def test_nothing_found(self):
        assert extract_acp_error("just text") is None


class TestResourceNotFound:
    @pytest.mark.parametrize(
        "error",
        [
            {"code": -32002, "message": "whatever"},
            {"code": -32001, "message": "whatever"},
            {"code": -32000, "message": "Session not found"},
            {"code": -32000, "message": "failed", "data": {"details": ["unknown session abc"]}},
            RuntimeError("Resource not found: session xyz"),
        ],
    )
    def test_detected(self, error):
        assert is_acp_resource_not_found_error(error)

    @pytest.mark.parametrize(
        "error",
        [{"code": -32603, "message": "Internal error"}, RuntimeError("timeout")],
    )
    def test_not_detected(self, error):
        assert not is_acp_resource_not_found_error(error)
