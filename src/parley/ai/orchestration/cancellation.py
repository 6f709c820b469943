"""Cooperative cancellation shared between a conversation and its subagents."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import OperationCancelledError

__all__ = ["CancellationToken"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Signal-based, non-preemptive cancellation.

    The token only flips a flag and wakes waiters; long-running work checks
    :attr:`is_cancellation_requested` at its own checkpoints or wraps awaits
    with :meth:`guard`. Child tokens created with :meth:`linked` fire when
    their parent fires, never the other way around.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._detach: Callable[[], None] | None = None

    @classmethod
    def linked(cls, parent: CancellationToken | None) -> CancellationToken:
        """Return a child token that is cancelled whenever ``parent`` is."""
        child = cls()
        if parent is not None:
            child._detach = parent.add_callback(child.cancel)
        return child

    @property
    def is_cancellation_requested(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.debug("Cancellation callback raised", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it."""
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return _remove

    def dispose(self) -> None:
        """Detach from the parent token, if any."""
        if self._detach is not None:
            self._detach()
            self._detach = None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            OperationCancelledError: If the token fires before the awaitable
                resolves. The pending work is cancelled.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _pending = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await work
        raise OperationCancelledError()
