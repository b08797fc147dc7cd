"""
Per-device alarm list cache.

Diagnosing N links on one OLT should cost one CLI round-trip, not N. The
cache keeps the last successful alarm list per device id for a short TTL
and serializes concurrent fetches for the same device behind a lock, so
callers arriving while a fetch is in flight wait for it and reuse its
result instead of opening their own session.

Failures are never cached.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from linkdiag.models import AlarmRecord
from linkdiag.timestamps import monotonic

logger = logging.getLogger(__name__)

AlarmFetcher = Callable[[], Awaitable[list[AlarmRecord]]]


class AlarmCache:
    """Device id -> (fetched_at, alarms) with a TTL checked on read.

    Args:
        ttl: Seconds an alarm list stays fresh
        clock: Monotonic clock, injectable for tests
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, list[AlarmRecord]]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, device_id: str) -> Optional[list[AlarmRecord]]:
        """Return a copy of the cached list if still fresh, else None."""
        entry = self._entries.get(device_id)
        if entry is None:
            return None
        fetched_at, alarms = entry
        if self._clock() - fetched_at >= self.ttl:
            del self._entries[device_id]
            return None
        return list(alarms)

    def put(self, device_id: str, alarms: list[AlarmRecord]) -> None:
        self._entries[device_id] = (self._clock(), list(alarms))

    def invalidate(self, device_id: Optional[str] = None) -> None:
        """Drop one device's entry, or everything."""
        if device_id is None:
            self._entries.clear()
        else:
            self._entries.pop(device_id, None)

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    async def get_or_fetch(self, device_id: str, fetch: AlarmFetcher) -> list[AlarmRecord]:
        """Return the fresh cached list or run fetch() once and cache it.

        Exceptions from fetch() propagate and leave the cache untouched.
        """
        cached = self.get(device_id)
        if cached is not None:
            logger.debug(f"Alarm cache hit for {device_id}", extra={"device_id": device_id})
            return cached

        async with self._lock_for(device_id):
            # Another caller may have filled the entry while we waited
            cached = self.get(device_id)
            if cached is not None:
                logger.debug(f"Alarm cache hit for {device_id} after wait", extra={"device_id": device_id})
                return cached

            logger.debug(f"Alarm cache miss for {device_id}", extra={"device_id": device_id})
            alarms = await fetch()
            self.put(device_id, alarms)
            return list(alarms)
