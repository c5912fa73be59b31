"""
errors.py — Domain error taxonomy

Services raise these; main.py maps them to JSON responses with a
machine-readable ``kind`` and the HTTP status carried by the class.

Business Rules:
- Entities outside the caller's organization raise NotFoundError, never Forbidden
- Unique-constraint violations surface as ConflictError
- Gateway timeouts and non-2xx responses surface as ExternalGatewayError

Called by: services/*, dependencies.py, main.py (exception handlers)
Depends on: nothing
"""

from __future__ import annotations

from typing import Any


class FleetPartsError(Exception):
    code = "internal_error"
    http_status = 500

    def __init__(self, detail: str | None = None, **context: Any) -> None:
        self.detail = detail or self.code.replace("_", " ").capitalize()
        self.context = context
        super().__init__(self.detail)

    def to_payload(self, request_id: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.detail,
            "kind": self.code,
            "status_code": self.http_status,
            "request_id": request_id,
        }
        if self.context:
            payload["context"] = self.context
        return payload


class NotFoundError(FleetPartsError):
    code = "not_found"
    http_status = 404


class UnauthorizedError(FleetPartsError):
    code = "unauthorized"
    http_status = 401


class ForbiddenError(FleetPartsError):
    code = "forbidden"
    http_status = 403


class InvalidStateError(FleetPartsError):
    code = "invalid_state"
    http_status = 409


class ConflictError(FleetPartsError):
    code = "conflict"
    http_status = 409


class ExternalGatewayError(FleetPartsError):
    code = "gateway_failure"
    http_status = 502


class ValidationError(FleetPartsError):
    code = "validation_error"
    http_status = 400
