"""API module - error taxonomy, quota detection and retry with backoff."""

from turnloop.api.errors import (
    ApiError,
    BadRequestError,
    ForbiddenError,
    OperationCancelled,
    SchedulerBusyError,
    StructuredError,
    UnauthorizedError,
    get_error_message,
    to_friendly_error,
)
from turnloop.api.retry import RetryHandler, RetryOptions, retry_with_backoff

__all__ = [
    "ApiError",
    "BadRequestError",
    "ForbiddenError",
    "OperationCancelled",
    "RetryHandler",
    "RetryOptions",
    "SchedulerBusyError",
    "StructuredError",
    "UnauthorizedError",
    "get_error_message",
    "retry_with_backoff",
    "to_friendly_error",
]
