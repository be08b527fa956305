"""Error envelope shared by every endpoint.

Every non-2xx response carries
    {"error": {"code": "BIDDING_NOT_FOUND", "message": "...", "detail": {...}}}
where `code` is the stable machine-readable reason from the engine.
"""

from typing import Any

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


def error_body(code: str, message: str, detail: dict[str, Any] | None = None) -> dict[str, Any]:
    """Envelope dict for HTTPException details and exception handlers."""
    return ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump()


# OpenAPI documentation of the status codes engine errors map to.
ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Rejected input (validation codes)"},
    403: {"model": ErrorResponse, "description": "Blocked by an antifraud or visibility rule"},
    404: {"model": ErrorResponse, "description": "Unknown or foreign entity"},
    409: {"model": ErrorResponse, "description": "State conflict (closed, duplicate, wrong status)"},
    422: {"model": ErrorResponse, "description": "Malformed request"},
}
