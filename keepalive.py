import asyncio
from typing import Awaitable, Callable, Optional

from constants import KEEP_ALIVE_INTERVAL_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)


class KeepAliveController:
    """Single-shot liveness timer that re-arms after firing and on user activity.

    The pending timer always measures time since the last activity. Only this
    object touches the timer task.
    """

    def __init__(
        self,
        on_fire: Callable[[], Awaitable[None]],
        interval: float = KEEP_ALIVE_INTERVAL_SECONDS,
        enabled: bool = True,
    ):
        self.on_fire = on_fire
        self.interval = interval
        self.enabled = enabled
        self.fire_count = 0
        self._task: Optional[asyncio.Task] = None
        # bumped by every stop(); a firing task only re-arms if it is unchanged
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """(Re)arm the timer. Does nothing while disabled."""
        if not self.enabled:
            return
        self.stop()
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def kick(self) -> None:
        """Record activity: restart the countdown if enabled."""
        if self.enabled:
            self.start()

    def enable(self) -> bool:
        """Returns False if it was already enabled."""
        if self.enabled:
            return False
        self.enabled = True
        self.start()
        logger.info("Keep-alive enabled")
        return True

    def disable(self) -> bool:
        """Returns False if it was already disabled."""
        if not self.enabled:
            return False
        self.stop()
        self.enabled = False
        logger.info("Keep-alive disabled")
        return True

    async def _run(self) -> None:
        await asyncio.sleep(self.interval)
        # kick() during the callback arms a new task and must not cancel this one
        self._task = None
        generation = self._generation
        try:
            await self.on_fire()
        except Exception as e:
            logger.error(f"Keep-alive callback failed: {e}", exc_info=True)
        self.fire_count += 1
        if self.enabled and self._task is None and self._generation == generation:
            self.start()
