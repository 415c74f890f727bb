"""
Timer & Concurrency Coordinator.

One cancellable asyncio task per key. Keys are namespaced by room code:
  "{code}:phase:{name}"          phase / sub-phase timers (cancelled on every transition)
  "{code}:teardown"              empty-room grace timer
  "{code}:bot:{bot_id}:{intent}" bot simulator intents

Rescheduling an existing key cancels the previous timer. A key is removed from
the registry before its callback runs, so a callback that triggers a phase
transition (and therefore cancel_all) never cancels itself mid-flight.

Callbacks must re-validate room state themselves; the coordinator only
guarantees that a cancelled timer never starts its callback.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


def now_ms() -> int:
    """Wall clock in epoch milliseconds; the unit of every timer_end."""
    return int(time.time() * 1000)


class TimerCoordinator:
    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay_ms: int, callback: TimerCallback) -> None:
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(self._run(key, delay_ms, callback))

    async def _run(self, key: str, delay_ms: int, callback: TimerCallback) -> None:
        await asyncio.sleep(max(0, delay_ms) / 1000)
        current = self._tasks.get(key)
        if current is asyncio.current_task():
            self._tasks.pop(key, None)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer callback failed (key=%s)", key)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task and not task.done():
            task.cancel()
            return True
        return False

    def cancel_all(self, prefix: str) -> int:
        keys = [k for k in self._tasks if k.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def pending(self, prefix: str = "") -> List[str]:
        return sorted(k for k, t in self._tasks.items() if k.startswith(prefix) and not t.done())

    def shutdown(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)


# Module-level singleton shared by every room and the bot simulator
timers = TimerCoordinator()
