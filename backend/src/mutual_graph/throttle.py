"""Rate-limited fetch gateway.

Two layers sit between the analysis pipeline and the Bluesky API:

1. RequestQueue - process-wide. Caps in-flight provider calls (2 by default) and
   keeps an absolute minimum spacing between dispatches.
2. RateLimiter - sliding-window request budget with exponential backoff driven
   by consecutive throttling errors.

FetchGateway combines both around a single transport coroutine and owns the
retry loop for throttled requests.
"""
import asyncio
import logging
import random
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .config import Settings, settings as default_settings
from .errors import RateLimitExceeded, TransportError


logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]


class RateLimiter:
    """Sliding-window limiter with exponential backoff and jitter."""

    def __init__(
        self,
        max_requests: int = 80,
        window_seconds: float = 300.0,
        min_wait_seconds: float = 2.0,
        backoff_factor: float = 1.5,
        max_backoff_seconds: float = 60.0,
        jitter_seconds: float = 1.0,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.min_wait_seconds = min_wait_seconds
        self.backoff_factor = backoff_factor
        self.max_backoff_seconds = max_backoff_seconds
        self.jitter_seconds = jitter_seconds
        self.consecutive_errors = 0
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._timestamps: deque[float] = deque()
        self._last_request: Optional[float] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, config: Settings = None, **kwargs) -> "RateLimiter":
        config = config or default_settings
        return cls(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
            min_wait_seconds=config.rate_limit_min_wait_seconds,
            backoff_factor=config.rate_limit_backoff_factor,
            max_backoff_seconds=config.rate_limit_max_backoff_seconds,
            jitter_seconds=config.rate_limit_jitter_seconds,
            **kwargs
        )

    @property
    def requests_in_window(self) -> int:
        self._evict(self._clock())
        return len(self._timestamps)

    def backoff_delay(self) -> float:
        """min(maxBackoff, minWait * factor^consecutiveErrors)."""
        return min(
            self.max_backoff_seconds,
            self.min_wait_seconds * self.backoff_factor ** self.consecutive_errors
        )

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    async def acquire(self, force_delay: bool = False) -> None:
        """Wait until a request may be issued, then record it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)

                window_full = len(self._timestamps) >= self.max_requests
                spacing_remaining = 0.0
                if self._last_request is not None:
                    spacing_remaining = max(
                        0.0, self.min_wait_seconds - (now - self._last_request)
                    )

                if not (force_delay or window_full or spacing_remaining > 0):
                    break

                window_backoff = self.backoff_delay() if (force_delay or window_full) else 0.0
                delay = max(window_backoff, spacing_remaining) + self._rng() * self.jitter_seconds
                if window_full:
                    logger.info(
                        "Rate limit reached (%d/%d in window), waiting %.2fs",
                        len(self._timestamps), self.max_requests, delay
                    )
                await self._sleep(delay)
                force_delay = False

            now = self._clock()
            self._timestamps.append(now)
            self._last_request = now

    def handle_rate_limit(self, retry_after: Optional[float] = None) -> float:
        """Register a throttling error and return how long to back off."""
        self.consecutive_errors += 1
        if retry_after:
            return float(retry_after)
        return self.backoff_delay()

    def reset_errors(self) -> None:
        self.consecutive_errors = 0


class RequestQueue:
    """Process-wide concurrency cap and dispatch spacing for provider calls."""

    def __init__(
        self,
        max_concurrent: int = 2,
        min_spacing_seconds: float = 2.0,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.max_concurrent = max_concurrent
        self.min_spacing_seconds = min_spacing_seconds
        self.in_flight = 0
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._last_dispatch: Optional[float] = None

    @classmethod
    def from_settings(cls, config: Settings = None, **kwargs) -> "RequestQueue":
        config = config or default_settings
        return cls(
            max_concurrent=config.queue_max_concurrent_requests,
            min_spacing_seconds=config.queue_min_request_spacing_seconds,
            **kwargs
        )

    async def submit(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run call once a slot is free and the spacing has elapsed."""
        async with self._semaphore:
            async with self._spacing_lock:
                if self._last_dispatch is not None:
                    wait = self.min_spacing_seconds - (self._clock() - self._last_dispatch)
                    if wait > 0:
                        await self._sleep(wait)
                self._last_dispatch = self._clock()

            self.in_flight += 1
            try:
                return await call()
            finally:
                self.in_flight -= 1


Transport = Callable[[str, dict], Awaitable[dict]]


class FetchGateway:
    """request(endpoint, params) through the shared queue and the throttle.

    The transport raises RateLimitExceeded for a provider "too many requests"
    signal and TransportError for everything else; it never retries itself.
    """

    def __init__(
        self,
        transport: Transport,
        limiter: RateLimiter,
        queue: RequestQueue,
        max_retries: int = 3,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._transport = transport
        self.limiter = limiter
        self.queue = queue
        self.max_retries = max_retries
        self._sleep = sleep

    async def request(self, endpoint: str, params: dict = None) -> dict:
        return await self.queue.submit(lambda: self._throttled(endpoint, params or {}))

    async def _throttled(self, endpoint: str, params: dict) -> dict:
        retries_left = self.max_retries

        while True:
            await self.limiter.acquire()
            try:
                response = await self._transport(endpoint, params)
            except RateLimitExceeded as e:
                if retries_left <= 0:
                    raise RateLimitExceeded(
                        f"Rate limit exceeded and out of retries for {endpoint}",
                        retry_after=e.retry_after,
                        response=e.response
                    ) from e
                wait = self.limiter.handle_rate_limit(e.retry_after)
                logger.warning("Rate limited on %s, waiting %.2fs before retry", endpoint, wait)
            except TransportError as e:
                if retries_left <= 0 or not _is_transient(e):
                    raise
                wait = self.limiter.handle_rate_limit()
                logger.warning("Request to %s failed (%s), retrying in %.2fs", endpoint, e, wait)
            else:
                self.limiter.reset_errors()
                return response

            retries_left -= 1
            await self._sleep(wait)


def _is_transient(error: TransportError) -> bool:
    """Connection failures (status 0) and provider 5xx are worth retrying."""
    return error.status_code == 0 or error.status_code >= 500
