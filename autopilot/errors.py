"""Error taxonomy shared by every component.

The status codes are what the (external) HTTP layer maps each error to.
"""
from __future__ import annotations


class AutopilotError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "status": self.status_code}


class ValidationError(AutopilotError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AutopilotError):
    status_code = 404
    code = "NOT_FOUND"


class ExternalServiceError(AutopilotError):
    """An adapter, the AI service, the browser or a messaging provider failed."""

    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"


class InternalError(AutopilotError):
    status_code = 500
    code = "INTERNAL_ERROR"
