"""
Cooperative cancellation for a single import run
"""

import asyncio
from typing import Optional

from core.exceptions import ImportCancelledError


class CancellationToken:
    """
    Cancellation flag handed to the orchestrator and the retry manager.

    Work is never interrupted mid-batch: holders call `raise_if_cancelled()`
    at batch boundaries and before backoff sleeps.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Import cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ImportCancelledError(self.reason or "Import cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep up to `seconds`, waking early (and raising) on cancellation."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
