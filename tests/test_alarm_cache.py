"""Tests for the per-device alarm cache."""

import asyncio

import pytest

from linkdiag.alarm_cache import AlarmCache
from linkdiag.models import AlarmRecord


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _alarm(source: str) -> AlarmRecord:
    return AlarmRecord(timestamp="", severity="CRITICAL", source=source, status="Active", name="GPON_LOSi")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return AlarmCache(ttl=60, clock=clock)


# ---------------------------------------------------------------------------
# TTL
# ---------------------------------------------------------------------------

class TestTtl:
    def test_fresh_then_expired(self, cache, clock):
        cache.put("olt-1", [_alarm("gpon-1/1/1/1")])
        clock.advance(59)
        assert cache.get("olt-1")[0].source == "gpon-1/1/1/1"
        clock.advance(1)
        assert cache.get("olt-1") is None

    def test_keyed_by_device(self, cache):
        cache.put("olt-1", [_alarm("a")])
        assert cache.get("olt-2") is None

    def test_invalidate(self, cache):
        cache.put("olt-1", [])
        cache.put("olt-2", [])
        cache.invalidate("olt-1")
        assert cache.get("olt-1") is None
        assert cache.get("olt-2") == []
        cache.invalidate()
        assert cache.get("olt-2") is None

    def test_returned_list_is_a_copy(self, cache):
        cache.put("olt-1", [_alarm("a")])
        cache.get("olt-1").append(_alarm("b"))
        cache.get("olt-1").clear()
        assert [a.source for a in cache.get("olt-1")] == ["a"]


# ---------------------------------------------------------------------------
# Single-flight fetches
# ---------------------------------------------------------------------------

class TestGetOrFetch:
    @pytest.mark.asyncio
    async def test_one_fetch_per_ttl_window(self, cache, clock):
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return [_alarm(f"round-{calls}")]

        for _ in range(5):
            alarms = await cache.get_or_fetch("olt-1", fetch)
        assert calls == 1
        assert alarms[0].source == "round-1"

        clock.advance(61)
        for _ in range(3):
            alarms = await cache.get_or_fetch("olt-1", fetch)
        assert calls == 2
        assert alarms[0].source == "round-2"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, cache):
        calls = 0
        release = asyncio.Event()

        async def fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return [_alarm("shared")]

        tasks = [asyncio.create_task(cache.get_or_fetch("olt-1", fetch)) for _ in range(10)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert all(r[0].source == "shared" for r in results)

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, cache):
        attempts = 0

        async def fetch():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ConnectionError("olt unreachable")
            return [_alarm("recovered")]

        with pytest.raises(ConnectionError):
            await cache.get_or_fetch("olt-1", fetch)
        assert cache.get("olt-1") is None

        alarms = await cache.get_or_fetch("olt-1", fetch)
        assert alarms[0].source == "recovered"
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_devices_fetch_independently(self, cache):
        seen = []

        async def fetch_for(device):
            async def fetch():
                seen.append(device)
                return []
            return fetch

        await cache.get_or_fetch("olt-1", await fetch_for("olt-1"))
        await cache.get_or_fetch("olt-2", await fetch_for("olt-2"))
        assert seen == ["olt-1", "olt-2"]
