"""Cooperative cancellation shared between the loop, the network and tools.

A ``CancellationToken`` is fired once and stays fired. Work that awaits
on the network or on a tool is raced against the token with
:meth:`CancellationToken.guard` / :meth:`CancellationToken.iterate`, so a
fired token aborts the in-flight await with :class:`OperationCancelled`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from turnloop.api.errors import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[str], None]] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self.reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        """Create a token that fires by itself after ``seconds``.

        Must be called from within a running event loop.
        """
        token = cls()
        loop = asyncio.get_running_loop()
        token._timer = loop.call_later(seconds, token.cancel, f"timed out after {seconds}s")
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Later calls are no-ops."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Run ``callback(reason)`` when the token fires (immediately if it already has)."""
        if self.cancelled:
            callback(self.reason or "cancelled")
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[str], None]) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            OperationCancelled: If the token fires before the awaitable completes.
        """
        if self.cancelled:
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise OperationCancelled(self.reason or "cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, OperationCancelled):
            await task
        raise OperationCancelled(self.reason or "cancelled")

    async def iterate(self, stream: AsyncIterator[T]) -> AsyncIterator[T]:
        """Yield from ``stream``, aborting the pending read when the token fires."""
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    item = await self.guard(iterator.__anext__())
                except StopAsyncIteration:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
