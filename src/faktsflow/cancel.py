"""Cooperative cancellation for connection attempts.

A single :class:`CancelToken` is threaded through an entire connect attempt.
Every network-bound step wraps its awaitable in :meth:`CancelToken.guard`,
which races it against the token and an optional deadline so that a fired
token stops discovery, polling and alias probes promptly.

Example::

    cancel = CancelToken()
    task = asyncio.create_task(orchestrator.connect(endpoint, cancel))
    ...
    cancel.cancel("user pressed back")
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from faktsflow.exceptions import Cancelled

T = TypeVar("T")


class CancelToken:
    """A one-shot cancellation signal backed by :class:`asyncio.Event`.

    Once fired, a token stays cancelled; create a new token for every
    connect attempt.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        """Whether :meth:`cancel` has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Fire the token. Calling it again has no effect."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`~faktsflow.exceptions.Cancelled` if the token fired."""
        if self._event.is_set():
            raise Cancelled(self._reason or "Operation cancelled")

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds, waking early with ``Cancelled`` if the token fires."""
        self.raise_if_cancelled()
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Await *awaitable*, aborting on cancellation or after *timeout* seconds.

        The wrapped operation is cancelled (and awaited, so its resources are
        released) whenever it does not finish first.

        Args:
            awaitable: The operation to run.
            timeout: Deadline in seconds, or ``None`` for no deadline.

        Returns:
            The result of *awaitable*.

        Raises:
            Cancelled: If the token fired before the operation finished.
            TimeoutError: If the deadline passed first.
        """
        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            await _discard(task)
            self.raise_if_cancelled()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            await _discard(task)
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        await _discard(task)
        self.raise_if_cancelled()
        raise TimeoutError(f"Operation did not complete within {timeout}s")


def ensure_token(cancel: Optional[CancelToken]) -> CancelToken:
    """Return *cancel*, or a fresh token that never fires."""
    return cancel if cancel is not None else CancelToken()


async def _discard(task: asyncio.Future) -> None:
    """Cancel *task* and wait until it has unwound."""
    if task.done():
        if not task.cancelled():
            task.exception()  # mark retrieved
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
