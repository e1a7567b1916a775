"""
forrent/core/cancel.py
Cooperative cancellation for fan-out requests.

One CancelToken is shared by every sub-request of an operation. Cancelling it
aborts the underlying tasks (httpx closes the in-flight request) and makes
each guarded call raise RequestCancelled. Owners check `token.cancelled`
before applying results.
"""

import asyncio
from typing import Any, Awaitable, Optional

from forrent.core.errors import RequestCancelled


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled(self.reason or "cancelled")

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable` unless the token fires first; then abort it and raise RequestCancelled."""
        work = asyncio.ensure_future(awaitable)
        if self.cancelled:
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            self.raise_if_cancelled()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        if work in done:
            waiter.cancel()
            return work.result()

        work.cancel()
        # the aborted request's outcome is irrelevant once the token fired
        await asyncio.gather(work, return_exceptions=True)
        raise RequestCancelled(self.reason or "cancelled")


async def guarded(token: Optional[CancelToken], awaitable: Awaitable[Any]) -> Any:
    if token is None:
        return await awaitable
    return await token.run(awaitable)
