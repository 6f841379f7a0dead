"""
Sliding-window admission control.

Injected into the API key authenticator as its admission controller so that
a key's ``rate_limit_per_minute`` is enforced on every use, before any
credential is issued.
"""

import asyncio
import logging
import math
import time
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass

from .exceptions import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int | None = None


class SlidingWindowRateLimiter:
    """
    In-memory rate limiter using a sliding window.

    Suitable for single-instance deployments; every process keeps its own
    window per identifier.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_tracked_identifiers: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_tracked_identifiers = max_tracked_identifiers
        self.clock = clock
        self._requests: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def check(self, identifier: str, limit: int) -> RateLimitResult:
        """Record a request for ``identifier`` if it fits within ``limit``."""
        async with self._lock:
            now = self.clock()
            window_start = now - self.window_seconds

            if (
                len(self._requests) >= self.max_tracked_identifiers
                and identifier not in self._requests
            ):
                self._evict_idle(window_start)

            request_times = self._requests[identifier]
            while request_times and request_times[0] <= window_start:
                request_times.popleft()

            current = len(request_times)
            if current < limit:
                request_times.append(now)
                return RateLimitResult(allowed=True, limit=limit, remaining=limit - current - 1)

            retry_after = max(1, math.ceil(request_times[0] + self.window_seconds - now))
            logger.debug(f"Rate limit exceeded for {identifier}: {current}/{limit}")
            return RateLimitResult(
                allowed=False, limit=limit, remaining=0, retry_after=retry_after
            )

    async def enforce(self, identifier: str, limit: int | None) -> None:
        """
        Raise when the identifier is over its limit. ``None`` means unlimited.

        Raises:
            RateLimitedError: With ``retry_after`` in seconds
        """
        if limit is None:
            return
        result = await self.check(identifier, limit)
        if not result.allowed:
            raise RateLimitedError(
                f"Rate limit of {limit}/min exceeded for {identifier}",
                retry_after=result.retry_after,
            )

    async def reset(self, identifier: str) -> None:
        async with self._lock:
            self._requests.pop(identifier, None)

    def _evict_idle(self, window_start: float) -> None:
        idle = [
            identifier
            for identifier, times in self._requests.items()
            if not times or times[-1] <= window_start
        ]
        for identifier in idle:
            del self._requests[identifier]
        if len(self._requests) >= self.max_tracked_identifiers:
            logger.warning(
                f"Rate limiter at capacity ({self.max_tracked_identifiers} identifiers)"
            )
