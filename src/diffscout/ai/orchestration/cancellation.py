"""Cooperative cancellation shared by an analysis and all of its nested work."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, TypeVar

from .errors import CancellationError

__all__ = ["CancellationToken", "run_cancellable"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """A one-shot cancellation flag with parent/child linking.

    Cancelling a token cancels every child created from it. Cancelling a
    child leaves the parent untouched, which is how a subagent timeout stops
    the subagent without stopping the analysis that spawned it.
    """

    def __init__(self, *, reason: str | None = None) -> None:
        self._cancelled = False
        self._reason = reason
        self._children: list[CancellationToken] = []
        self._waiters: list[asyncio.Future[None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if reason is not None:
            self._reason = reason
        LOGGER.debug("Cancellation requested (%s)", self._reason or "no reason given")
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)
        self._waiters.clear()
        for child in list(self._children):
            child.cancel(self._reason)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self._reason or "Operation cancelled")

    def child(self) -> CancellationToken:
        """Return a token that is cancelled whenever this one is."""
        token = CancellationToken()
        if self._cancelled:
            token.cancel(self._reason)
        else:
            self._children.append(token)
        return token

    def detach(self, child: CancellationToken) -> None:
        """Stop propagating cancellation to *child* once its work is done."""
        try:
            self._children.remove(child)
        except ValueError:
            pass

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    """Await *awaitable*, raising :class:`CancellationError` if *token* fires first.

    The inner task is cancelled when the token wins the race.
    """

    if token is None:
        return await awaitable
    if token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()

    if not token.cancelled:
        return work.result()

    work.cancel()
    try:
        await work
    except (asyncio.CancelledError, Exception):
        LOGGER.debug("Cancelled request finished with an error", exc_info=True)
    raise CancellationError(token.reason or "Operation cancelled")
