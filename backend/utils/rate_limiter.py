"""Rate limiting for SOW generation (per-actor sliding window)"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
import logging
import os

from utils.errors import AppError

logger = logging.getLogger(__name__)

DEFAULT_GENERATE_LIMIT = int(os.environ.get("GENERATE_RATE_LIMIT", "10"))
DEFAULT_WINDOW_SECONDS = int(os.environ.get("GENERATE_RATE_WINDOW_SECONDS", "60"))


class RateLimited(AppError):
    error_code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimiter:
    """
    In-process sliding window limiter. Good enough for a single instance;
    replace with Redis INCR + EXPIRE when scaling horizontally.

    check_rate_limit has no await between reading and recording an attempt,
    so each key is updated atomically on the event loop.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_GENERATE_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self.attempts: Dict[str, List[datetime]] = {}
        self._last_sweep = clock()

    async def check_rate_limit(self, key: str) -> tuple[bool, Optional[str], int]:
        """
        Check if rate limit is exceeded and record the attempt when allowed.

        Returns:
            (allowed: bool, error_message: Optional[str], retry_after_seconds: int)
        """
        now = self._clock()
        self._sweep(now)

        # Clean old entries
        recent = [
            timestamp for timestamp in self.attempts.get(key, [])
            if now - timestamp < self.window
        ]
        self.attempts[key] = recent

        # Check limit
        if len(recent) >= self.max_attempts:
            wait_until = min(recent) + self.window
            wait_seconds = max(int((wait_until - now).total_seconds()), 1)
            return False, f"Too many requests. Try again in {wait_seconds} seconds", wait_seconds

        # Record attempt
        recent.append(now)
        return True, None, 0

    def _sweep(self, now: datetime) -> None:
        """Once per window, drop keys with no attempt inside the window."""
        if now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        stale = [k for k, stamps in self.attempts.items() if not stamps or now - stamps[-1] >= self.window]
        for k in stale:
            del self.attempts[k]

    async def enforce(self, key: str) -> None:
        """Raise RateLimited when `key` is over its budget."""
        allowed, message, retry_after = await self.check_rate_limit(key)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}")
            raise RateLimited(message, retry_after=retry_after)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self.attempts.clear()
        else:
            self.attempts.pop(key, None)
