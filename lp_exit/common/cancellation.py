from __future__ import annotations

import asyncio

from .errors import ExitCancelledError


class CancellationToken:
    """Cooperative abort signal handed explicitly to every async step of a run.

    Raising the token never interrupts an awaited call by itself; callers
    check it at their suspension points and decide how to wind down.
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

    def cancel(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExitCancelledError(self._reason or "aborted")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, timeout_seconds: float) -> bool:
        """Sleep up to ``timeout_seconds``; returns True when woken by cancellation."""
        if timeout_seconds <= 0:
            return self.cancelled

        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            return False
        return True
