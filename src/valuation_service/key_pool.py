from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from valuation_service.clock import Clock, SystemClock
from valuation_service.errors import AllKeysExhaustedError

logger = logging.getLogger(__name__)


@dataclass
class KeyState:
    key: str
    exhausted_at: datetime | None = None
    invalid_at: datetime | None = None
    last_used: datetime | None = None

    @property
    def usable(self) -> bool:
        return self.exhausted_at is None and self.invalid_at is None


def _mask(key: str) -> str:
    return f"{key[:4]}..." if len(key) > 4 else "***"


class KeyPool:
    """Rotating pool of upstream API keys shared by every worker.

    Exhausted keys come back at the start of the next billing period
    (calendar month); invalid keys never do. All mutations go through one
    lock, and marking is keyed by the failing key so two workers reporting
    the same failure advance the pool only once.
    """

    def __init__(self, keys: list[str], clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._states = [KeyState(key=k) for k in dict.fromkeys(keys)]
        self._index = 0
        self._lock = asyncio.Lock()
        now = self._clock.now()
        self._period = (now.year, now.month)

    def _next_usable(self, start: int) -> int:
        size = len(self._states)
        for offset in range(size):
            index = (start + offset) % size
            if self._states[index].usable:
                return index
        return -1

    def _roll_period(self, now: datetime) -> None:
        period = (now.year, now.month)
        if period == self._period:
            return
        reset = 0
        for state in self._states:
            if state.exhausted_at is not None:
                state.exhausted_at = None
                reset += 1
        self._period = period
        self._index = max(self._next_usable(0), 0)
        if reset:
            logger.info("New billing period %04d-%02d, reset %d exhausted keys", now.year, now.month, reset)

    def _current_index(self) -> int:
        if not self._states:
            return -1
        index = self._next_usable(self._index)
        if index >= 0:
            self._index = index
        return index

    async def current(self) -> str:
        async with self._lock:
            now = self._clock.now()
            self._roll_period(now)
            index = self._current_index()
            if index < 0:
                raise AllKeysExhaustedError("no usable API key in pool")
            state = self._states[index]
            state.last_used = now
            return state.key

    async def mark_exhausted(self, key: str) -> None:
        async with self._lock:
            self._mark(key, "exhausted")

    async def mark_invalid(self, key: str) -> None:
        async with self._lock:
            self._mark(key, "invalid")

    async def advance(self, from_key: str) -> str | None:
        """Move past ``from_key`` if it is still current; returns the new current key."""
        async with self._lock:
            self._roll_period(self._clock.now())
            if self._states and self._states[self._index].key == from_key:
                index = self._next_usable(self._index + 1)
                if index >= 0:
                    self._index = index
            index = self._current_index()
            return None if index < 0 else self._states[index].key

    def _mark(self, key: str, kind: str) -> None:
        now = self._clock.now()
        self._roll_period(now)
        for index, state in enumerate(self._states):
            if state.key != key:
                continue
            if kind == "exhausted" and state.exhausted_at is None:
                state.exhausted_at = now
                logger.warning("API key %s exhausted for billing period", _mask(key))
            elif kind == "invalid" and state.invalid_at is None:
                state.invalid_at = now
                logger.warning("API key %s marked invalid", _mask(key))
            if index == self._index:
                nxt = self._next_usable(index + 1)
                if nxt >= 0:
                    self._index = nxt
            return

    def status(self) -> dict[str, Any]:
        return {
            "total": len(self._states),
            "available": sum(1 for s in self._states if s.usable),
            "exhausted": sum(1 for s in self._states if s.exhausted_at is not None),
            "invalid": sum(1 for s in self._states if s.invalid_at is not None),
            "current": _mask(self._states[self._index].key) if self._states else None,
        }
