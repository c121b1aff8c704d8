"""Rate limiter implementation using a sliding window per caller."""

import asyncio
import time
from typing import Callable, Dict, List, Optional

from fastapi import Request
from structlog import get_logger

from ..domain.errors import RateLimitExceeded

logger = get_logger()


class RateLimiter:
    """Sliding-window limiter keyed by caller and path."""

    def __init__(
        self,
        rate_limit: int = 120,
        time_window: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_limit = rate_limit
        self.time_window = time_window  # in seconds
        self.requests: Dict[str, List[float]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info("rate_limiter_initialized", rate_limit=rate_limit, time_window=time_window)

    async def start(self):
        """Start the periodic cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self):
        """Stop the periodic cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def _prune(self, key: str, now: float) -> List[float]:
        cutoff = now - self.time_window
        timestamps = [ts for ts in self.requests.get(key, []) if ts > cutoff]
        if timestamps:
            self.requests[key] = timestamps
        else:
            self.requests.pop(key, None)
        return timestamps

    async def _periodic_cleanup(self):
        """Drop timestamps that fell out of the window."""
        while True:
            try:
                await asyncio.sleep(self.time_window)
                async with self._lock:
                    now = self._clock()
                    for key in list(self.requests):
                        self._prune(key, now)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("rate_limiter_cleanup_error", error=str(e))

    async def check_rate_limit(self, key: str) -> None:
        """Record a request for ``key`` or raise RateLimitExceeded."""
        async with self._lock:
            now = self._clock()
            timestamps = self._prune(key, now)
            if len(timestamps) >= self.rate_limit:
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    current_requests=len(timestamps),
                    rate_limit=self.rate_limit,
                )
                raise RateLimitExceeded(
                    f"Rate limit of {self.rate_limit} requests per {self.time_window} seconds exceeded",
                    details={"retry_after": self.time_window},
                )
            self.requests.setdefault(key, []).append(now)

    async def get_remaining_requests(self, key: str) -> int:
        async with self._lock:
            return max(0, self.rate_limit - len(self._prune(key, self._clock())))


def rate_limit_key(request: Request) -> str:
    """Authenticated callers are limited per user, anonymous ones per address."""
    caller = request.headers.get("x-user-id")
    if not caller:
        caller = request.client.host if request.client else "unknown"
    return f"{caller}:{request.url.path}"
