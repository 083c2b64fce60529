from __future__ import annotations

import asyncio
import hashlib
import json
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from widget_engine.schemas import QueryPayload, ResultEnvelope


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def payload_cache_key(widget_id: str, payload: QueryPayload) -> str:
    canonical = json.dumps(payload.model_dump(mode="json"), sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"widget:{widget_id}:{digest}"


@dataclass(slots=True)
class _CacheEntry:
    envelope: ResultEnvelope
    expires_at: datetime


class ResultCache:
    """Bounded TTL cache of successful widget envelopes, keyed by rendered payload."""

    def __init__(self, max_entries: int = 500, clock: Callable[[], datetime] = _utcnow) -> None:
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> ResultEnvelope | None:
        now = self._clock()
        async with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            if entry.expires_at <= now:
                self._entries.pop(key, None)
                return None
            self._entries.move_to_end(key)
            return entry.envelope.model_copy(deep=True)

    async def set(self, key: str, envelope: ResultEnvelope, *, ttl_seconds: float) -> None:
        if ttl_seconds <= 0 or not envelope.success:
            return
        async with self._lock:
            self._entries[key] = _CacheEntry(
                envelope=envelope.model_copy(deep=True),
                expires_at=self._clock() + timedelta(seconds=ttl_seconds),
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def invalidate(self, widget_id: str | None = None) -> int:
        async with self._lock:
            if widget_id is None:
                removed = len(self._entries)
                self._entries.clear()
                return removed
            prefix = f"widget:{widget_id}:"
            keys: list[str] = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                self._entries.pop(key, None)
            return len(keys)

    def __len__(self) -> int:
        return len(self._entries)
