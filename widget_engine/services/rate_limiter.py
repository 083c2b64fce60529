from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from time import monotonic

from widget_engine.errors import RateLimited


@dataclass(slots=True, frozen=True)
class RateLimitReservation:
    key: str
    recorded_at: float
    previous: float | None


class MinimumIntervalRateLimiter:
    """Allows one request per gate key per interval.

    The interval is chosen by gate class (the plugin name), falling back to the
    default interval. An interval of zero disables gating for that class.
    State lives in memory only.
    """

    def __init__(
        self,
        default_interval_seconds: float = 60.0,
        intervals_by_class: Mapping[str, float] | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._default_interval = max(0.0, float(default_interval_seconds))
        self._intervals = {name.lower(): max(0.0, float(value)) for name, value in (intervals_by_class or {}).items()}
        self._clock = clock
        self._last_request: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def interval_for(self, gate_class: str | None = None) -> float:
        if gate_class is None:
            return self._default_interval
        return self._intervals.get(gate_class.lower(), self._default_interval)

    def time_until_next_request(self, key: str, gate_class: str | None = None) -> float:
        last = self._last_request.get(key)
        if last is None:
            return 0.0
        return max(0.0, self.interval_for(gate_class) - (self._clock() - last))

    def can_request(self, key: str, gate_class: str | None = None) -> bool:
        return self.time_until_next_request(key, gate_class) <= 0.0

    def record_request(self, key: str) -> None:
        self._last_request[key] = self._clock()

    async def acquire(self, key: str, gate_class: str | None = None) -> RateLimitReservation:
        async with self._lock:
            wait_seconds = self.time_until_next_request(key, gate_class)
            if wait_seconds > 0.0:
                raise RateLimited(key=key, retry_after_seconds=wait_seconds)
            previous = self._last_request.get(key)
            now = self._clock()
            self._last_request[key] = now
            return RateLimitReservation(key=key, recorded_at=now, previous=previous)

    async def release(self, reservation: RateLimitReservation) -> None:
        async with self._lock:
            if self._last_request.get(reservation.key) != reservation.recorded_at:
                return
            if reservation.previous is None:
                self._last_request.pop(reservation.key, None)
            else:
                self._last_request[reservation.key] = reservation.previous

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._last_request.clear()
        else:
            self._last_request.pop(key, None)
