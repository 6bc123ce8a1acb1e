"""
Outbound request throttling.

Fixed-window rate limiter for asyncio code. At most `max_requests` permits
are issued per window; excess callers wait in arrival order until the next
window opens.

Permits are consumed for the whole window. There is no release(): a permit
only goes back to the pool when its holder was cancelled before it could
use it.
"""

import asyncio
import logging
import math
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from .errors import ErrorCode, McpError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window limiter with FIFO permit grants.

    All state is touched from the event loop thread only, so no lock is
    needed; each mutation runs without an intervening await.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the limiter.

        Args:
            max_requests: Permits per window (must be > 0)
            window_seconds: Window length in seconds (must be > 0)
            timeout: Maximum seconds acquire() waits, None waits forever
            clock: Monotonic time source

        Raises:
            ValueError: If a limit is not positive
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be > 0")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.timeout = timeout
        self.clock = clock

        self._count = 0
        self._window_start: Optional[float] = None
        self._window_id = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Window bookkeeping
    # ------------------------------------------------------------------

    def _roll_window(self) -> None:
        now = self.clock()
        if self._window_start is None or now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._window_id += 1
            self._count = 0
            self._grant_waiters()

    def _grant_waiters(self) -> None:
        while self._waiters and self._count < self.max_requests:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._count += 1
            waiter.set_result(self._window_id)

    def _reset_in(self) -> float:
        if self._window_start is None:
            return 0.0
        return max(0.0, self._window_start + self.window_seconds - self.clock())

    def _schedule_rollover(self) -> None:
        loop = asyncio.get_running_loop()
        # A timer left on a closed or different loop will never fire
        if self._timer is not None and (self._timer.cancelled() or self._timer_loop is not loop):
            self._timer = None
        if self._timer is not None or not self._waiters:
            return
        self._timer = loop.call_later(self._reset_in(), self._on_rollover)
        self._timer_loop = loop

    def _on_rollover(self) -> None:
        self._timer = None
        self._roll_window()
        self._schedule_rollover()

    def _abandon(self, waiter: asyncio.Future) -> None:
        """Drop a waiter that timed out or was cancelled."""
        if not waiter.done():
            waiter.cancel()
        if waiter.cancelled():
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass
            return

        # Granted but the caller never resumed: hand the permit back
        if waiter.result() == self._window_id and self._count > 0:
            self._count -= 1
            self._grant_waiters()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def acquire(self) -> None:
        """Wait until a permit is available and take it.

        Returns immediately while the current window has capacity and no
        one is queued ahead.

        Raises:
            McpError: RATE_LIMITED if the configured timeout elapses first
        """
        self._roll_window()
        if not self._waiters and self._count < self.max_requests:
            self._count += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._schedule_rollover()
        logger.debug("Rate limit reached, %d caller(s) waiting", len(self._waiters))

        try:
            if self.timeout is None:
                await waiter
            else:
                await asyncio.wait_for(waiter, self.timeout)
        except asyncio.TimeoutError:
            self._abandon(waiter)
            raise McpError(
                ErrorCode.RATE_LIMITED,
                f"Rate limit exceeded: no permit available within {self.timeout} seconds",
                details={"retry_after": round(self._reset_in(), 3)},
            )
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

    def check(self) -> None:
        """Take a permit without waiting.

        Raises:
            McpError: RATE_LIMITED if no permit is free right now
        """
        self._roll_window()
        if self._waiters or self._count >= self.max_requests:
            reset_in = self._reset_in()
            raise McpError(
                ErrorCode.RATE_LIMITED,
                f"Rate limit exceeded. Please try again in {math.ceil(reset_in)} seconds.",
                details={"retry_after": round(reset_in, 3)},
            )
        self._count += 1

    def reset(self) -> None:
        """Start a fresh window now, granting queued callers first."""
        self._window_start = None
        self._roll_window()

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the limiter state."""
        expired = self._window_start is None or self._reset_in() == 0.0
        used = 0 if expired else self._count
        return {
            "limit": self.max_requests,
            "remaining": max(0, self.max_requests - used),
            "reset_in": 0.0 if expired else round(self._reset_in(), 3),
            "waiting": sum(1 for w in self._waiters if not w.done()),
        }

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
