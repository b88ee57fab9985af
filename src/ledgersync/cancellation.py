"""Cooperative cancellation passed explicitly through a reconciliation run."""

from __future__ import annotations

import asyncio
import contextlib

from ledgersync.errors import SyncCancelledError


class CancellationToken:
    """A one-shot cancellation signal.

    Checked at the top of every loop iteration and before every external call.
    Mutations committed before the token fires are never rolled back.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError(self._reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for *seconds* or until cancelled. Returns True when cancelled."""
        if seconds <= 0:
            return self.cancelled
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        return self.cancelled


def ensure_token(cancel: CancellationToken | None) -> CancellationToken:
    """Return *cancel* or a fresh token that never fires."""
    return cancel if cancel is not None else CancellationToken()
