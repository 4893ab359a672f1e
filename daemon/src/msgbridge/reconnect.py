"""Reconnection policy for the messaging session.

Keeps at most one scheduled retry alive. The default interval is flat
(5 seconds between attempts); a backoff multiplier above 1.0 grows the
delay geometrically up to max_delay.

Usage:
    scheduler = ReconnectScheduler(ReconnectPolicy(base_delay=5.0))

    # After a recoverable close
    scheduler.schedule(controller.start)

    # After the session opens
    scheduler.reset()

    # On logout, terminal close or shutdown
    scheduler.cancel()
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)


RetryCallback = Callable[[], Coroutine[Any, Any, None]]


@dataclass
class ReconnectPolicy:
    """Retry timing."""

    base_delay: float = 5.0  # seconds
    multiplier: float = 1.0  # 1.0 = flat interval
    max_delay: float = 60.0

    def __post_init__(self):
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    def next_delay(self, current: float) -> float:
        """Delay to use after an attempt that waited `current` seconds."""
        if self.multiplier == 1.0:
            return self.base_delay
        return min(current * self.multiplier, max(self.max_delay, self.base_delay))


@dataclass
class ReconnectState:
    """Retry bookkeeping."""

    attempt: int = 0
    next_delay: float = 5.0


class ReconnectScheduler:
    """Schedules retries one at a time."""

    def __init__(self, policy: Optional[ReconnectPolicy] = None):
        self._policy = policy or ReconnectPolicy()
        self._state = ReconnectState(attempt=0, next_delay=self._policy.base_delay)
        self._task: Optional[asyncio.Task] = None

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def state(self) -> ReconnectState:
        return self._state

    @property
    def pending(self) -> bool:
        """True while a retry is scheduled and has not fired."""
        return self._task is not None and not self._task.done()

    def schedule(self, callback: RetryCallback) -> float:
        """Schedule callback after the current delay.

        Supersedes any retry already pending.

        Returns:
            The delay in seconds.
        """
        self.cancel()

        delay = self._state.next_delay
        self._state.attempt += 1
        self._state.next_delay = self._policy.next_delay(delay)

        logger.info(f"Reconnecting in {delay:g}s (attempt #{self._state.attempt})")
        self._task = asyncio.create_task(self._fire(delay, callback))
        return delay

    def cancel(self) -> bool:
        """Cancel the pending retry.

        Returns:
            True if a retry was pending.
        """
        task = self._task
        self._task = None
        if task is None or task.done():
            return False
        # A callback already running (start() in progress) cancels itself
        if task is asyncio.current_task():
            return False
        task.cancel()
        logger.debug("Pending reconnect cancelled")
        return True

    def reset(self) -> None:
        """Reset attempt counter and delay after a successful open."""
        self._state = ReconnectState(attempt=0, next_delay=self._policy.base_delay)

    async def _fire(self, delay: float, callback: RetryCallback) -> None:
        await asyncio.sleep(delay)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Reconnect attempt failed: {e}")
