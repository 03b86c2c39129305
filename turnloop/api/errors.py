"""Error types shared across the engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional


class ApiError(Exception):
    """Non-2xx response from the model service."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.headers = headers or {}
        self.body = body


class BadRequestError(ApiError):
    """HTTP 400 from the model service."""


class UnauthorizedError(ApiError):
    """HTTP 401 from the model service. Never retried, never swallowed."""


class ForbiddenError(ApiError):
    """HTTP 403 from the model service."""


class OperationCancelled(Exception):
    """Raised when a cancellation token fires during awaited work."""


class SchedulerBusyError(RuntimeError):
    """Raised when a batch is scheduled while another one is still running."""


@dataclass
class StructuredError:
    """Normalized error payload carried by ``error`` events."""

    message: str
    status: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"message": self.message}
        if self.status is not None:
            data["status"] = self.status
        return data


def get_error_message(error: object) -> str:
    if isinstance(error, ApiError):
        return error.message
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    try:
        return str(error)
    except Exception:
        return "Failed to get error details"


_FRIENDLY_ERRORS = {
    400: BadRequestError,
    401: UnauthorizedError,
    403: ForbiddenError,
}


def to_friendly_error(error: BaseException) -> BaseException:
    """Map generic API errors onto their specific subclasses by status."""
    if type(error) is ApiError and error.status in _FRIENDLY_ERRORS:
        friendly = _FRIENDLY_ERRORS[error.status](
            error.message, status=error.status, headers=error.headers, body=error.body
        )
        friendly.__cause__ = error
        return friendly
    return error
