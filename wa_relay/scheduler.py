import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .logs import json_log


class ReconnectScheduler:
    """
    Single-slot delayed task. Scheduling again replaces (cancels) the pending one,
    so at most one reconnect is ever armed.
    """

    def __init__(self, callback: Callable[[str], Awaitable[Any]]):
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self.reason: Optional[str] = None
        self.delay_ms: Optional[int] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, delay_ms: int, reason: str):
        self.cancel()
        delay_ms = max(0, int(delay_ms))
        self.reason = reason
        self.delay_ms = delay_ms
        self._task = asyncio.create_task(self._fire(delay_ms, reason))
        json_log("reconnect_scheduled", delay_ms=delay_ms, reason=reason)

    def cancel(self):
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            json_log("reconnect_cancelled", reason=self.reason)
        self.reason = None
        self.delay_ms = None

    async def _fire(self, delay_ms: int, reason: str):
        try:
            await asyncio.sleep(delay_ms / 1000.0)
        except asyncio.CancelledError:
            raise
        # Detach before running so a cancel() issued by the callback itself cannot abort it
        if self._task is asyncio.current_task():
            self._task = None
            self.reason = None
            self.delay_ms = None
        json_log("reconnect_fired", reason=reason)
        try:
            await self._callback(reason)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("reconnect_callback_error", level=logging.ERROR, reason=reason, error=str(e))
