"""Domain errors raised by services.

Routes translate these into the structured error envelope; see
`repair_engine.routes.deps.raise_http`.
"""

from typing import Any


class EngineError(Exception):
    """Base class for client-facing domain errors."""

    status_code = 400

    def __init__(self, code: str, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.detail = detail


class ValidationFailed(EngineError):
    """Bad or incomplete input."""

    status_code = 400


class PolicyRejected(EngineError):
    """Blacklist, trust tier, qualification or rate-limit rejection."""

    status_code = 403


class NotFound(EngineError):
    status_code = 404


class Conflict(EngineError):
    """Duplicate or state-transition conflict."""

    status_code = 409
