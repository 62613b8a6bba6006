from __future__ import annotations

from typing import Any

from keyforge.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Bad request", "BAD_REQUEST", "Name is required"),
    401: _error_response("Unauthorized", "AUTH_UNAUTHORIZED", "Invalid or expired token"),
    403: _error_response("Forbidden", "AUTH_FORBIDDEN", "Access denied to this instance"),
    404: _error_response("Not found", "NOT_FOUND", "Instance not found"),
    500: _error_response("Upstream or internal failure", "UPSTREAM_ERROR", "create_cipher failed"),
    503: _error_response("Not ready", "SERVICE_UNAVAILABLE", "Instance status is provisioning"),
}
