from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ValidationError(ApiError):
    """Malformed input, rejected before any transaction opens."""

    def __init__(self, message: str):
        super().__init__(status_code=422, code="VALIDATION_ERROR", message=message)


class AuthorizationError(ApiError):
    def __init__(self, action: str):
        super().__init__(status_code=403, code="FORBIDDEN", message=f"Unauthorized to {action}.")
        self.action = action


class ImmutableRecordError(ApiError):
    """Raised when a system-generated point is sent down a manual-only path."""

    def __init__(self, point_id: int):
        super().__init__(
            status_code=409,
            code="IMMUTABLE_POINT",
            message="System-generated attendance points cannot be edited or deleted.",
        )
        self.point_id = point_id


class NotFoundError(ApiError):
    def __init__(self, entity: str, entity_id: int | None = None):
        message = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(status_code=404, code="NOT_FOUND", message=message)
        self.entity = entity
        self.entity_id = entity_id


class ConsistencyFailure(ApiError):
    """A unit of work (mutation plus cascade) could not be committed atomically."""

    def __init__(self, operation: str):
        super().__init__(
            status_code=500,
            code="CONSISTENCY_FAILURE",
            message=f"Operation '{operation}' failed and was rolled back.",
        )
        self.operation = operation


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
