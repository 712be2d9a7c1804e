from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import defaultdict, deque
from typing import Awaitable, Callable, TypeVar

from valuation_service.errors import (
    AllKeysExhaustedError,
    InvalidCredentialError,
    QuotaExhaustedError,
    TransientUpstreamError,
    UpstreamUnavailableError,
)
from valuation_service.key_pool import KeyPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

WINDOW_SECONDS = 60.0


class SlidingWindowLimiter:
    """Per-endpoint requests-per-minute window; waits for a slot instead of failing."""

    def __init__(
        self,
        requests_per_minute: int,
        *,
        max_wait_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rpm = requests_per_minute
        self.max_wait_seconds = max_wait_seconds
        self._sleep = sleep
        self._monotonic = monotonic
        self._windows: dict[str, deque[float]] = defaultdict(deque)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._enabled = requests_per_minute > 0

    def _cleanup(self, endpoint: str, now: float) -> deque[float]:
        window = self._windows[endpoint]
        cutoff = now - WINDOW_SECONDS
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def check(self, endpoint: str) -> bool:
        if not self._enabled:
            return True
        return len(self._cleanup(endpoint, self._monotonic())) < self.rpm

    async def acquire(self, endpoint: str) -> None:
        if not self._enabled:
            return
        waited = 0.0
        async with self._locks[endpoint]:
            while True:
                now = self._monotonic()
                window = self._cleanup(endpoint, now)
                if len(window) < self.rpm:
                    window.append(now)
                    return
                delay = window[0] + WINDOW_SECONDS - now
                if waited + delay > self.max_wait_seconds:
                    raise UpstreamUnavailableError(
                        f"rate limit for {endpoint} would need a {waited + delay:.0f}s wait",
                        endpoint=endpoint,
                    )
                waited += delay
                await self._sleep(delay)


class RateLimitedClient:
    """Wraps every upstream call with rate limiting, retry and key rotation.

    ``request_fn`` receives the API key to use and must raise the error
    taxonomy from ``valuation_service.errors``. One semaphore bounds
    concurrent upstream calls across the on-demand and batch paths.
    """

    def __init__(
        self,
        key_pool: KeyPool,
        *,
        requests_per_minute: int = 30,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        max_concurrency: int = 4,
        max_rate_wait_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.key_pool = key_pool
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.limiter = SlidingWindowLimiter(
            requests_per_minute,
            max_wait_seconds=max_rate_wait_seconds,
            sleep=sleep,
            monotonic=monotonic,
        )
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._sleep = sleep
        self._rng = rng

    def retry_delay(self, attempt: int) -> float:
        delay = min(self.backoff_base_seconds * 2 ** attempt, self.backoff_max_seconds)
        return delay + delay * 0.2 * (self._rng() - 0.5)

    async def call(self, endpoint: str, request_fn: Callable[[str], Awaitable[T]]) -> T:
        async with self._semaphore:
            key = await self.key_pool.current()
            try:
                return await self._with_retry(endpoint, key, request_fn)
            except (QuotaExhaustedError, InvalidCredentialError) as exc:
                await self._retire(key, exc)

            key = await self.key_pool.current()
            logger.info("Retrying %s with rotated key", endpoint, extra={"endpoint": endpoint})
            try:
                return await self._with_retry(endpoint, key, request_fn)
            except (QuotaExhaustedError, InvalidCredentialError) as exc:
                await self._retire(key, exc)
                if self.key_pool.status()["available"] == 0:
                    raise AllKeysExhaustedError(
                        f"{endpoint}: every API key rejected", endpoint=endpoint,
                    ) from exc
                raise

    async def _retire(self, key: str, exc: Exception) -> None:
        if isinstance(exc, QuotaExhaustedError):
            await self.key_pool.mark_exhausted(key)
        else:
            await self.key_pool.mark_invalid(key)

    async def _with_retry(
        self, endpoint: str, key: str, request_fn: Callable[[str], Awaitable[T]],
    ) -> T:
        attempt = 0
        while True:
            await self.limiter.acquire(endpoint)
            try:
                return await request_fn(key)
            except TransientUpstreamError as exc:
                if attempt >= self.max_retries:
                    raise UpstreamUnavailableError(
                        f"max retries exceeded for {endpoint}: {exc}", endpoint=endpoint,
                    ) from exc
                delay = self.retry_delay(attempt)
                attempt += 1
                logger.info(
                    "Retry %d/%d for %s in %.2fs", attempt, self.max_retries, endpoint, delay,
                    extra={"endpoint": endpoint},
                )
                await self._sleep(delay)
