"""JSON-RPC error envelopes and upstream protocol error detection."""

from __future__ import annotations

import json
import math
from typing import Any

from acpx.errors import AcpxError

OUTPUT_ERROR_JSONRPC_CODES = {
    "NO_SESSION": -32002,
    "TIMEOUT": -32070,
    "PERMISSION_DENIED": -32071,
    "PERMISSION_PROMPT_UNAVAILABLE": -32072,
    "RUNTIME": -32603,
    "USAGE": -32602,
}

RESOURCE_NOT_FOUND_CODES = frozenset({-32001, -32002})

_MAX_CAUSE_DEPTH = 5
_MAX_HINT_DEPTH = 4
_NOT_FOUND_HINTS = ("resource_not_found", "resource not found", "session not found", "unknown session")


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _has_valid_acp_error(acp: dict | None) -> bool:
    return bool(
        acp
        and _is_number(acp.get("code"))
        and isinstance(acp.get("message"), str)
        and acp["message"].strip()
    )


def build_jsonrpc_error_response(
    output_code: str,
    message: str,
    id: str | int | None = None,
    detail_code: str | None = None,
    origin: str | None = None,
    retryable: bool | None = None,
    timestamp: str | None = None,
    session_id: str | None = None,
    acp: dict | None = None,
) -> dict:
    """Build ``{"jsonrpc": "2.0", "id": ..., "error": {...}}``.

    A well-formed upstream protocol error (`acp`) is passed through as is.
    Otherwise the code comes from OUTPUT_ERROR_JSONRPC_CODES and ``data``
    describes the internal error, omitting fields that were not given.
    """
    if _has_valid_acp_error(acp):
        error = {"code": acp["code"], "message": acp["message"]}
        if acp.get("data") is not None:
            error["data"] = acp["data"]
    else:
        data = {
            "acpxCode": output_code,
            "detailCode": detail_code,
            "origin": origin,
            "retryable": retryable,
            "timestamp": timestamp,
            "sessionId": session_id,
        }
        data = {key: value for key, value in data.items() if value is not None}
        error = {
            "code": OUTPUT_ERROR_JSONRPC_CODES.get(output_code, -32603),
            "message": message,
        }
        if data:
            error["data"] = data

    return {"jsonrpc": "2.0", "id": id, "error": error}


def error_response_for(exc: BaseException, id: str | int | None = None, origin: str = "cli") -> dict:
    """Envelope for an exception raised while serving a request."""
    acp = extract_acp_error(exc)
    if isinstance(exc, AcpxError):
        return build_jsonrpc_error_response(
            exc.output_code,
            str(exc),
            id=id,
            detail_code=exc.detail_code,
            origin=origin,
            retryable=exc.retryable,
            session_id=getattr(exc, "session_id", None),
            acp=acp,
        )
    return build_jsonrpc_error_response("RUNTIME", str(exc), id=id, origin=origin, acp=acp)


# ---------------------------------------------------------------------------
# Upstream protocol errors
# ---------------------------------------------------------------------------


def _fields(value: Any) -> dict | None:
    """View an error dict or exception as a mapping of error fields."""
    if isinstance(value, dict):
        return value
    if isinstance(value, BaseException):
        fields = {
            key: getattr(value, key)
            for key in ("code", "data", "error")
            if hasattr(value, key)
        }
        fields["message"] = getattr(value, "message", None) or str(value)
        if value.__cause__ is not None:
            fields["cause"] = value.__cause__
        return fields
    return None


def _to_acp_payload(value: Any) -> dict | None:
    fields = _fields(value)
    if fields is None or not _is_number(fields.get("code")):
        return None
    message = fields.get("message")
    if not isinstance(message, str) or not message:
        return None
    return {"code": fields["code"], "message": message, "data": fields.get("data")}


def _extract(value: Any, depth: int) -> dict | None:
    if depth > _MAX_CAUSE_DEPTH:
        return None
    direct = _to_acp_payload(value)
    if direct is not None:
        return direct
    fields = _fields(value)
    if fields is None:
        return None
    for key in ("error", "cause"):
        if key in fields:
            nested = _extract(fields[key], depth + 1)
            if nested is not None:
                return nested
    return None


def extract_acp_error(error: Any) -> dict | None:
    """Find a ``{code, message, data}`` protocol error in error or its nested error/cause."""
    return _extract(error, 0)


def _is_not_found_text(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    lowered = value.lower()
    return any(hint in lowered for hint in _NOT_FOUND_HINTS)


def _has_not_found_hint(value: Any, depth: int = 0) -> bool:
    if depth > _MAX_HINT_DEPTH:
        return False
    if _is_not_found_text(value):
        return True
    if isinstance(value, list):
        return any(_has_not_found_hint(v, depth + 1) for v in value)
    if isinstance(value, dict):
        return any(_has_not_found_hint(v, depth + 1) for v in value.values())
    return False


def _message_of(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, dict):
        if isinstance(error.get("message"), str) and error["message"]:
            return error["message"]
        try:
            return json.dumps(error)
        except (TypeError, ValueError):
            return str(error)
    return str(error)


def is_acp_resource_not_found_error(error: Any) -> bool:
    """Whether an upstream error means the agent no longer knows the session."""
    acp = extract_acp_error(error)
    if acp is not None:
        if acp["code"] in RESOURCE_NOT_FOUND_CODES:
            return True
        if _is_not_found_text(acp["message"]) or _has_not_found_hint(acp["data"]):
            return True
    return _is_not_found_text(_message_of(error))
