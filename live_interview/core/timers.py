"""Named, cancelable timers owned by a single interview session.

Every delayed action in a session (chunk flush, auto-advance grace period,
warning display, duration ticker, manual-end eligibility) lives here under a
stable name, so starting a timer again replaces the old one and teardown can
cancel everything in one call.
"""
import asyncio
import inspect
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

CHUNK_FLUSH = "chunk_flush"
AUTO_ADVANCE = "auto_advance"
WARNING_DISPLAY = "warning_display"
DURATION_TICKER = "duration_ticker"
MANUAL_END_ELIGIBILITY = "manual_end_eligibility"


class TimerRegistry:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def start(self, name: str, delay: float, callback: Callable[[], Any]) -> None:
        """Arm ``name`` to run ``callback`` after ``delay`` seconds, replacing any pending run."""
        if self._closed:
            logger.debug("timer_start_ignored", timer=name, reason="registry closed")
            return
        self.cancel(name)
        self._handles[name] = self.loop.call_later(delay, self._fire, name, callback)

    def start_repeating(self, name: str, interval: float, callback: Callable[[], Any]) -> None:
        """Run ``callback`` every ``interval`` seconds until ``name`` is canceled."""

        def tick():
            result = callback()
            if name not in self._handles or self._closed:
                return result
            self.start_repeating(name, interval, callback)
            return result

        if self._closed:
            return
        self.cancel(name)
        self._handles[name] = self.loop.call_later(interval, self._fire, name, tick, True)

    def _fire(self, name: str, callback: Callable[[], Any], keep_slot: bool = False) -> None:
        if not keep_slot:
            self._handles.pop(name, None)
        try:
            result = callback()
        except Exception:
            logger.exception("timer_callback_failed", timer=name)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("timer_task_failed", error=str(exc))

    def cancel(self, name: str) -> bool:
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_active(self, name: str) -> bool:
        return name in self._handles

    def cancel_all(self) -> None:
        for name in list(self._handles):
            self.cancel(name)
        # A timer callback may be the one tearing the session down.
        current = asyncio.current_task() if self._loop is not None and self._loop.is_running() else None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()

    def close(self) -> None:
        self.cancel_all()
        self._closed = True
