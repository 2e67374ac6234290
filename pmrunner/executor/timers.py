"""Named asyncio timers for one execution.

Each timer is an asyncio task keyed by name. Scheduling a name that is
already armed replaces it, which is how the progress-aware overall timeout
pushes its deadline forward. Callbacks are plain synchronous callables run on
the event loop; a failing callback is logged and never kills the timer set.
"""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], None]


class TimerSet:
    """Finite set of named timers owned by a single execution."""

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.Task] = {}
        self._closed = False

    def schedule(self, name: str, delay: float, callback: TimerCallback) -> None:
        """Run callback once after delay seconds, replacing any timer called name."""
        if self._closed:
            return
        self.cancel(name)
        self._timers[name] = asyncio.create_task(
            self._run_once(name, delay, callback), name=f"timer:{name}"
        )

    def every(self, name: str, interval: float, callback: TimerCallback) -> None:
        """Run callback every interval seconds until cancelled."""
        if self._closed:
            return
        self.cancel(name)
        self._timers[name] = asyncio.create_task(
            self._run_periodic(name, interval, callback), name=f"timer:{name}"
        )

    def cancel(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def cancel_all(self) -> None:
        """Disarm every timer. Later schedule/every calls are ignored."""
        self._closed = True
        for name in list(self._timers):
            self.cancel(name)

    def is_active(self, name: str) -> bool:
        timer = self._timers.get(name)
        return timer is not None and not timer.done()

    @property
    def active_names(self) -> list[str]:
        return sorted(name for name in self._timers if self.is_active(name))

    async def _run_once(self, name: str, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(name) is asyncio.current_task():
            del self._timers[name]
        self._fire(name, callback)

    async def _run_periodic(self, name: str, interval: float, callback: TimerCallback) -> None:
        while True:
            await asyncio.sleep(interval)
            self._fire(name, callback)
            # The callback may have cancelled or replaced this timer
            if self._timers.get(name) is not asyncio.current_task():
                return

    @staticmethod
    def _fire(name: str, callback: TimerCallback) -> None:
        try:
            callback()
        except Exception:
            logger.exception(f"Timer '{name}' callback failed")
