"""
Error taxonomy for the booking engine.

Every error carries a human-readable message, the HTTP status it maps to and,
when raised inside a multi-step operation, the name of the step that failed so
callers can tell "pick another slot" apart from "retry the same request".
"""

from typing import Any, Optional

from .shared.responses import failure


class AppError(Exception):
    """Base class for all errors surfaced to callers"""

    status_code = 500

    def __init__(self, message: str, step: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.step = step
        self.details = details

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return failure(self.message, self.kind, step=self.step, details=self.details)


class ValidationError(AppError):
    """Malformed or out-of-policy input. Never retried."""

    status_code = 400


class AuthorizationError(AppError):
    """Actor is not allowed to touch the resource"""

    status_code = 403


class NotFoundError(AppError):
    """Referenced patient, practitioner, slot, appointment or payment is absent"""

    status_code = 404


class ConflictError(AppError):
    """Slot race lost or double-booking attempt. Caller must choose another slot."""

    status_code = 409


class BusinessLogicError(AppError):
    """Gateway decline or fraud block. Terminal, not retried."""

    status_code = 422


class ExternalServiceError(AppError):
    """Gateway unreachable or timed out after the retry budget was spent"""

    status_code = 502

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        details: Any = None,
        service: Optional[str] = None,
    ):
        super().__init__(message, step=step, details=details)
        self.service = service
