"""Retry logic with exponential backoff for model-service calls.

Besides plain backoff this handles the quota fallback path: under an
auth mode that supports it, a quota signal (or two 429s in a row) is
escalated to ``on_persistent_failure``. Accepting the fallback restarts
the attempt budget; declining aborts with the original error.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

import httpx

from turnloop.api.quota import is_generic_quota_exceeded_error, is_pro_quota_exceeded_error
from turnloop.config.models import AuthType, RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

FallbackResult = Union[str, bool, None]
PersistentFailureHandler = Callable[[Optional[AuthType], BaseException], Awaitable[FallbackResult]]

_FIVE_XX = re.compile(r"5\d{2}")

# Patched in tests so backoff does not actually sleep
_delay = asyncio.sleep


def default_should_retry(error: BaseException) -> bool:
    """Retry on HTTP 429 and 5xx, by status or by message."""
    status = get_error_status(error)
    if status is not None and (status == 429 or 500 <= status < 600):
        return True
    message = str(error)
    if "429" in message:
        return True
    if _FIVE_XX.search(message):
        return True
    return False


@dataclass
class RetryOptions:
    """Options for :func:`retry_with_backoff`. Delays are in seconds."""

    max_attempts: int = 5
    initial_delay: float = 5.0
    max_delay: float = 30.0
    should_retry: Callable[[BaseException], bool] = field(default=default_should_retry)
    on_persistent_failure: Optional[PersistentFailureHandler] = None
    auth_type: Optional[AuthType] = None

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs: Any) -> "RetryOptions":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            **kwargs,
        )


@dataclass
class RetryState:
    """State of a retry operation."""

    attempt: int = 0
    consecutive_429s: int = 0
    current_delay: float = 0.0
    total_delay: float = 0.0
    last_error: Optional[BaseException] = None


def get_error_status(error: Any) -> Optional[int]:
    """Extract an HTTP status from the error or its nested response."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            value = getattr(response, attr, None)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


def _get_headers(error: Any) -> Any:
    headers = getattr(error, "headers", None)
    if headers:
        return headers
    response = getattr(error, "response", None)
    if response is not None:
        return getattr(response, "headers", None)
    return None


def get_retry_after_delay(error: Any) -> float:
    """Seconds requested by a ``Retry-After`` header, or 0 when absent.

    The header may be a number of seconds or an HTTP-date.
    """
    headers = _get_headers(error)
    if not headers:
        return 0.0
    value = headers.get("retry-after") or headers.get("Retry-After")
    if not isinstance(value, str) or not value.strip():
        return 0.0
    value = value.strip()
    if value.isdigit():
        return float(int(value))
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return 0.0
    if retry_at is None:
        return 0.0
    return max(0.0, retry_at.timestamp() - time.time())


class RetryHandler:
    """Handles retry logic with exponential backoff and quota fallback."""

    def __init__(self, options: Optional[RetryOptions] = None):
        self.options = options or RetryOptions()

    def calculate_delay(self, current_delay: float) -> float:
        """Apply +/-30% jitter to ``current_delay``."""
        jitter = current_delay * 0.3 * random.uniform(-1, 1)
        return max(0.0, current_delay + jitter)

    def _fallback_eligible(self) -> bool:
        auth_type = self.options.auth_type
        return (
            self.options.on_persistent_failure is not None
            and auth_type is not None
            and AuthType(auth_type).supports_fallback
        )

    async def _try_fallback(self, error: BaseException) -> Optional[bool]:
        """Escalate to the fallback hook.

        Returns True when a fallback was accepted, False when it was
        declined and None when the hook itself failed.
        """
        try:
            result = await self.options.on_persistent_failure(self.options.auth_type, error)
        except Exception as hook_error:
            logger.warning("Fallback handler failed: %s", hook_error)
            return None
        return result is not False and result is not None

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """Call ``func`` until it succeeds or retries are exhausted.

        Raises:
            The last error once retries are exhausted, ``should_retry``
            rejects it, or a quota fallback is declined.
        """
        opts = self.options
        state = RetryState(current_delay=opts.initial_delay)

        while state.attempt < opts.max_attempts:
            state.attempt += 1
            try:
                return await func()
            except Exception as error:
                state.last_error = error
                status = get_error_status(error)

                if status == 429:
                    state.consecutive_429s += 1
                else:
                    state.consecutive_429s = 0

                if status == 429 and self._fallback_eligible():
                    quota_signal = is_pro_quota_exceeded_error(error) or is_generic_quota_exceeded_error(
                        error
                    )
                    if quota_signal or state.consecutive_429s >= 2:
                        accepted = await self._try_fallback(error)
                        if accepted is True:
                            state.attempt = 0
                            state.consecutive_429s = 0
                            state.current_delay = opts.initial_delay
                            continue
                        if accepted is False:
                            raise

                if state.attempt >= opts.max_attempts or not opts.should_retry(error):
                    raise

                retry_after = get_retry_after_delay(error) if status == 429 else 0.0
                if retry_after > 0:
                    logger.warning(
                        "Attempt %d failed with status %s. Retrying after %.1fs (Retry-After)...",
                        state.attempt,
                        status,
                        retry_after,
                    )
                    await _delay(retry_after)
                    state.total_delay += retry_after
                    state.current_delay = opts.initial_delay
                else:
                    _log_retry_attempt(state.attempt, error, status)
                    wait = self.calculate_delay(state.current_delay)
                    await _delay(wait)
                    state.total_delay += wait
                    state.current_delay = min(opts.max_delay, state.current_delay * 2)

        # Only reachable with max_attempts < 1
        raise RuntimeError("Retry attempts exhausted")


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
) -> T:
    """Run ``func`` through a :class:`RetryHandler`."""
    return await RetryHandler(options).execute(func)


def _log_retry_attempt(attempt: int, error: BaseException, status: Optional[int]) -> None:
    if status is not None:
        message = f"Attempt {attempt} failed with status {status}. Retrying with backoff..."
    else:
        message = f"Attempt {attempt} failed. Retrying with backoff..."

    if status is not None and 500 <= status < 600:
        logger.error("%s %s", message, error)
    elif status is None and _FIVE_XX.search(str(error)):
        logger.error("Attempt %d failed with 5xx error. Retrying with backoff... %s", attempt, error)
    else:
        logger.warning("%s %s", message, error)
