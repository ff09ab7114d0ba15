"""Cooperative cancellation tokens backed by asyncio.Event."""
import asyncio
from typing import Optional

from ..errors import OperationCancelled


class CancellationToken:
    """
    Cancellation handle shared between a controller and a worker.

    A token is cancelled when cancel() was called on it or on its parent.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None, reason: str = "Cancelled"):
        self._event = asyncio.Event()
        self._parent = parent
        self._reason = reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if reason:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled

    @property
    def reason(self) -> str:
        if not self._event.is_set() and self._parent is not None and self._parent.is_cancelled:
            return self._parent.reason
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise OperationCancelled(self.reason)

    async def wait(self) -> None:
        """Block until this token (or its parent) is cancelled."""
        if self._parent is None:
            await self._event.wait()
            return
        own = asyncio.ensure_future(self._event.wait())
        parent = asyncio.ensure_future(self._parent.wait())
        try:
            await asyncio.wait({own, parent}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (own, parent):
                if not task.done():
                    task.cancel()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"
