from __future__ import annotations

from typing import Any

from licencegate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _response("Not found", _error_example(code="NOT_FOUND", message="licence 'lic-1' not found")),
    409: _response(
        "Conflict",
        _error_example(
            code="CONCURRENCY_CONFLICT",
            message="Concurrency conflict for licence 'lic-1'.",
            details={
                "entity_type": "licence",
                "entity_id": "lic-1",
                "expected_version": "3",
                "current_version": "4",
                "conflicting_fields": ["status"],
            },
        ),
    ),
    422: _response("Validation error", _error_example(code="VALIDATION_ERROR", message="Validation error")),
    500: _response("Internal server error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    503: _response(
        "Service unavailable",
        _error_example(code="SERVICE_UNAVAILABLE", message="Backing store unavailable"),
    ),
}

WRITE_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    403: _response(
        "Forbidden",
        _error_example(code="UNAUTHORIZED", message="Approver must hold one of the roles: ComplianceManager"),
    ),
    428: _response(
        "Precondition required",
        _error_example(code="PRECONDITION_REQUIRED", message="If-Match header is required"),
    ),
}

VALIDATE_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    504: _response(
        "Evaluation timeout",
        _error_example(code="TIMEOUT", message="reference data for transaction SO-1 not loaded within 3.0s"),
    ),
}
