"""
Sliding-window rate limiter for model calls.

One limiter is shared by the whole process. It is consulted before every
Model Gateway attempt and records the attempt atomically with the check, so
two concurrent extractions can never both take the last free slot.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from .errors import RateLimitExceededError

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR


@dataclass
class RateLimitStatus:
    """
    Snapshot of the limiter state.
    """
    allowed: bool
    remaining_minute: int
    remaining_hour: int
    remaining_day: int
    retry_after_seconds: float = 0.0
    next_window_reset: Optional[float] = None


class SlidingWindowRateLimiter:
    """
    Per-minute, per-hour and per-day ceilings over a sliding window.
    """

    def __init__(
        self,
        max_per_minute: int = 10,
        max_per_hour: int = 100,
        max_per_day: int = 500,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the limiter.

        Args:
            max_per_minute: Ceiling for any 60-second window
            max_per_hour: Ceiling for any 60-minute window
            max_per_day: Ceiling for any 24-hour window
            clock: Source of the current time in seconds
        """
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour
        self.max_per_day = max_per_day
        self._clock = clock
        self._requests: Deque[float] = deque()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "SlidingWindowRateLimiter":
        """
        Build a limiter from the rate_limits section of a ConfigManager.
        """
        return cls(
            max_per_minute=config.get("rate_limits.per_minute", 10),
            max_per_hour=config.get("rate_limits.per_hour", 100),
            max_per_day=config.get("rate_limits.per_day", 500)
        )

    def _prune(self, now: float) -> None:
        while self._requests and self._requests[0] <= now - DAY:
            self._requests.popleft()

    def _status(self, now: float) -> RateLimitStatus:
        self._prune(now)
        in_minute = [t for t in self._requests if t > now - MINUTE]
        in_hour = [t for t in self._requests if t > now - HOUR]
        in_day = list(self._requests)

        windows = [
            (in_minute, self.max_per_minute, MINUTE),
            (in_hour, self.max_per_hour, HOUR),
            (in_day, self.max_per_day, DAY),
        ]

        retry_after = 0.0
        next_reset = None
        for stamps, ceiling, span in windows:
            if stamps:
                reset_at = stamps[0] + span
                next_reset = reset_at if next_reset is None else min(next_reset, reset_at)
            if len(stamps) >= ceiling:
                # The window frees up when enough of its oldest requests expire
                oldest_blocking = stamps[len(stamps) - ceiling] if ceiling > 0 else now
                retry_after = max(retry_after, oldest_blocking + span - now)

        return RateLimitStatus(
            allowed=retry_after <= 0,
            remaining_minute=max(0, self.max_per_minute - len(in_minute)),
            remaining_hour=max(0, self.max_per_hour - len(in_hour)),
            remaining_day=max(0, self.max_per_day - len(in_day)),
            retry_after_seconds=max(0.0, retry_after),
            next_window_reset=next_reset
        )

    def check(self) -> RateLimitStatus:
        """
        Report whether a request would be allowed, without recording one.

        Returns:
            The current RateLimitStatus
        """
        with self._lock:
            return self._status(self._clock())

    def acquire(self) -> RateLimitStatus:
        """
        Check the limits and record a request in one atomic step.

        Returns:
            The status after recording the request

        Raises:
            RateLimitExceededError: If any window is full
        """
        with self._lock:
            now = self._clock()
            status = self._status(now)
            if not status.allowed:
                logging.warning(
                    f"Rate limit reached; retry in {status.retry_after_seconds:.1f}s "
                    f"(remaining minute={status.remaining_minute}, hour={status.remaining_hour}, "
                    f"day={status.remaining_day})"
                )
                raise RateLimitExceededError(
                    "Local rate limit exceeded",
                    remaining_minute=status.remaining_minute,
                    remaining_hour=status.remaining_hour,
                    remaining_day=status.remaining_day,
                    retry_after=status.retry_after_seconds
                )
            self._requests.append(now)
            return self._status(now)

    def reset(self) -> None:
        """Forget all recorded requests."""
        with self._lock:
            self._requests.clear()

    def update_limits(
        self,
        max_per_minute: Optional[int] = None,
        max_per_hour: Optional[int] = None,
        max_per_day: Optional[int] = None
    ) -> None:
        """
        Change one or more ceilings. Recorded requests are kept.
        """
        with self._lock:
            if max_per_minute is not None:
                self.max_per_minute = max_per_minute
            if max_per_hour is not None:
                self.max_per_hour = max_per_hour
            if max_per_day is not None:
                self.max_per_day = max_per_day

    def get_limits(self) -> Dict[str, int]:
        return {
            "per_minute": self.max_per_minute,
            "per_hour": self.max_per_hour,
            "per_day": self.max_per_day,
        }


_shared_limiter: Optional[SlidingWindowRateLimiter] = None
_shared_lock = threading.Lock()


def get_rate_limiter(config=None) -> SlidingWindowRateLimiter:
    """
    Get the process-wide limiter, creating it on first use.

    Args:
        config: ConfigManager used only when the limiter is first created

    Returns:
        The shared SlidingWindowRateLimiter
    """
    global _shared_limiter
    with _shared_lock:
        if _shared_limiter is None:
            _shared_limiter = (
                SlidingWindowRateLimiter.from_config(config) if config is not None
                else SlidingWindowRateLimiter()
            )
        return _shared_limiter
