"""
Per-user sliding-window limiter for inbound chat messages.
"""
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional
import logging

logger = logging.getLogger(__name__)

HOUR = 3600.0


class RateLimiter:
    """
    Sliding-window limiter keyed by user id.

    Unlike a blocking limiter it never sleeps: `allow()` answers whether the
    user may send another message right now and records it if so. Users whose
    window has emptied are dropped so the map only holds recent senders.
    """

    def __init__(
        self,
        messages_per_minute: int,
        messages_per_hour: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = 256,
    ):
        """
        Args:
            messages_per_minute: Maximum messages per user in any 60s window (0 disables)
            messages_per_hour: Optional cap per user in any 3600s window
            clock: Time source, injectable for tests
            prune_every: Sweep idle users out of the map every N calls to allow()
        """
        self.messages_per_minute = messages_per_minute
        self.messages_per_hour = messages_per_hour
        self._clock = clock
        self._prune_every = max(1, prune_every)
        self._calls = 0
        self._history: Dict[str, Deque[float]] = {}

    def _cleanup(self, window: Deque[float], now: float) -> None:
        """Drop timestamps older than one hour"""
        while window and now - window[0] > HOUR:
            window.popleft()

    def _prune(self, now: float) -> None:
        """Forget every user whose window is empty"""
        for user_id in list(self._history):
            window = self._history[user_id]
            self._cleanup(window, now)
            if not window:
                del self._history[user_id]

    def allow(self, user_id: str) -> bool:
        if not self.messages_per_minute and not self.messages_per_hour:
            return True

        now = self._clock()
        self._calls += 1
        if self._calls % self._prune_every == 0:
            self._prune(now)

        window = self._history.setdefault(user_id, deque())
        self._cleanup(window, now)

        last_minute = sum(1 for t in window if now - t <= 60.0)
        if self.messages_per_minute and last_minute >= self.messages_per_minute:
            logger.info("Rate limit hit for %s: %d messages in the last minute", user_id, last_minute)
            return False
        if self.messages_per_hour and len(window) >= self.messages_per_hour:
            logger.info("Hourly rate limit hit for %s", user_id)
            return False

        window.append(now)
        return True

    @property
    def tracked_users(self) -> int:
        return len(self._history)

    def get_stats(self, user_id: str) -> dict:
        """Current limiter statistics for one user"""
        now = self._clock()
        window = self._history.get(user_id)
        if window is not None:
            self._cleanup(window, now)
            if not window:
                del self._history[user_id]
        window = window or deque()
        return {
            "messages_in_last_minute": sum(1 for t in window if now - t <= 60.0),
            "messages_in_last_hour": len(window),
            "limit_per_minute": self.messages_per_minute,
            "limit_per_hour": self.messages_per_hour,
        }
