import json
from dataclasses import replace

import pytest

from routeflow.service.catalog import default_catalog
from routeflow.service.health import HealthMonitor, HealthRecord, HealthStatus, catalog_probe
from routeflow.storage.memory import MemoryTTLCache
from routeflow.storage.redis_cache import RedisTTLCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingProbe:
    def __init__(self, status=HealthStatus.HEALTHY):
        self.status = status
        self.calls = []

    async def __call__(self, model):
        self.calls.append(model.id)
        return HealthRecord(
            model_id=model.id,
            status=self.status,
            latency_ms=10.0,
            error_rate=0.0,
            last_checked=0.0,
            availability=1.0,
        )


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.expiry = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self.store.pop(key, None)

    async def scan_iter(self, match=None):
        prefix = (match or "").rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key


HAIKU = "anthropic.claude-3-haiku-20240307-v1:0"


@pytest.mark.asyncio
async def test_catalog_probe_reports_unavailable_entries():
    model = default_catalog().require(HAIKU)

    healthy = await catalog_probe(model)
    down = await catalog_probe(replace(model, available=False))

    assert healthy.status == HealthStatus.HEALTHY
    assert healthy.latency_ms == 400.0
    assert down.status == HealthStatus.UNAVAILABLE


@pytest.mark.asyncio
async def test_health_records_are_reused_until_stale():
    clock = FakeClock()
    probe = CountingProbe()
    monitor = HealthMonitor(probe, stale_seconds=60, clock=clock)
    model = default_catalog().require(HAIKU)

    first = await monitor.check(model)
    await monitor.check(model)
    assert probe.calls == [HAIKU]
    assert first.last_checked == clock.now

    clock.advance(60)
    await monitor.check(model)
    assert probe.calls == [HAIKU, HAIKU]
    assert monitor.probe_count == 2


@pytest.mark.asyncio
async def test_probe_exception_marks_model_degraded():
    async def broken(model):
        raise RuntimeError("endpoint unreachable")

    monitor = HealthMonitor(broken)
    record = await monitor.check(default_catalog().require(HAIKU))

    assert record.status == HealthStatus.DEGRADED
    assert record.healthy is False
    assert monitor.peek(HAIKU) is record


@pytest.mark.asyncio
async def test_memory_cache_expires_entries():
    clock = FakeClock()
    cache = MemoryTTLCache(clock=clock)

    await cache.set("k", {"v": 1}, 10)
    assert await cache.get("k") == {"v": 1}

    clock.advance(10)
    assert await cache.get("k") is None
    assert cache.size == 0


@pytest.mark.asyncio
async def test_memory_cache_returns_copies():
    cache = MemoryTTLCache()
    await cache.set("k", {"items": [1]}, 10)

    value = await cache.get("k")
    value["items"].append(2)

    assert await cache.get("k") == {"items": [1]}


@pytest.mark.asyncio
async def test_memory_cache_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        await MemoryTTLCache().set("k", 1, 0)


@pytest.mark.asyncio
async def test_redis_cache_round_trip_with_ttl():
    client = FakeRedis()
    cache = RedisTTLCache(client=client)

    await cache.set("route:x", {"model_id": "m"}, 300.7)

    assert client.expiry["routeflow:route:x"] == 300
    assert json.loads(client.store["routeflow:route:x"]) == {"model_id": "m"}
    assert await cache.get("route:x") == {"model_id": "m"}
    assert await cache.get("missing") is None


@pytest.mark.asyncio
async def test_redis_cache_treats_corrupted_entry_as_miss():
    client = FakeRedis()
    client.store["routeflow:bad"] = "{not json"
    cache = RedisTTLCache(client=client)

    assert await cache.get("bad") is None


@pytest.mark.asyncio
async def test_redis_cache_clear_only_touches_prefix():
    client = FakeRedis()
    client.store["other:key"] = "1"
    cache = RedisTTLCache(client=client)
    await cache.set("a", 1, 5)

    await cache.clear()

    assert client.store == {"other:key": "1"}


def test_redis_cache_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisTTLCache()
