import asyncio
import logging

import pytest

from billing.catalog import CatalogMetadataError, RawProduct
from billing.catalog_cache import CatalogCache


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(gateway, clock):
    return CatalogCache(gateway, ttl_seconds=300, clock=clock)


@pytest.mark.asyncio
async def test_reads_within_ttl_fetch_once(cache, gateway):
    first = await cache.get()
    second = await cache.get()

    assert gateway.product_calls == 1
    assert gateway.price_calls == 1
    assert first is second
    assert [plan.plan_id for plan in first.plans] == ["pro-plan", "basic"]


@pytest.mark.asyncio
async def test_forced_refresh_fetches_exactly_once(cache, gateway):
    await cache.get()

    await cache.get(force_refresh=True)

    assert gateway.product_calls == 2


@pytest.mark.asyncio
async def test_expired_snapshot_is_refetched(cache, gateway, clock):
    await cache.get()

    clock.now += 300
    await cache.get()
    assert gateway.product_calls == 1

    clock.now += 1
    await cache.get()
    assert gateway.product_calls == 2


@pytest.mark.asyncio
async def test_empty_catalogue_is_not_refetched_within_ttl(empty_gateway, clock):
    cache = CatalogCache(empty_gateway, ttl_seconds=300, clock=clock)

    snapshot = await cache.get()
    await cache.get()

    assert snapshot.populated
    assert snapshot.plans == ()
    assert empty_gateway.product_calls == 1


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_snapshot(cache, gateway):
    previous = await cache.get()
    gateway.error = RuntimeError("stripe down")

    with pytest.raises(RuntimeError):
        await cache.refresh()

    assert cache.snapshot is previous


@pytest.mark.asyncio
async def test_malformed_metadata_keeps_previous_snapshot(cache, gateway):
    previous = await cache.get()
    gateway.products.append(RawProduct(id="prod_bad", name="Broken", metadata={"features": "not-json"}))

    with pytest.raises(CatalogMetadataError):
        await cache.refresh()

    assert cache.snapshot is previous
    assert await cache.validate_price("basic", "monthly") == "price_basic_month"


@pytest.mark.asyncio
async def test_concurrent_stale_readers_share_one_fetch(cache, gateway):
    gate = asyncio.Event()
    gateway.gates.append(gate)

    readers = [asyncio.ensure_future(cache.get()) for _ in range(5)]
    await asyncio.sleep(0)
    assert cache.refreshing
    gate.set()
    snapshots = await asyncio.gather(*readers)

    assert gateway.product_calls == 1
    assert all(snapshot is snapshots[0] for snapshot in snapshots)
    assert not cache.refreshing


@pytest.mark.asyncio
async def test_slow_superseded_refresh_is_discarded(cache, gateway):
    slow_gate = asyncio.Event()
    gateway.gates.append(slow_gate)
    slow = asyncio.ensure_future(cache.refresh())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert gateway.product_calls == 1

    gateway.products = gateway.products[:1]
    fresh = await cache.refresh()
    assert [plan.plan_id for plan in fresh.plans] == ["basic"]

    slow_gate.set()
    result = await slow

    assert gateway.product_calls == 2
    assert cache.snapshot is fresh
    assert result is fresh


@pytest.mark.asyncio
async def test_validate_price(cache):
    assert await cache.validate_price("basic", "yearly") == "price_basic_year"
    assert await cache.validate_price("pro-plan", "one_time") == "price_pro_setup"
    assert await cache.validate_price("pro-plan", "yearly") is None
    assert await cache.validate_price("enterprise", "monthly") is None


@pytest.mark.asyncio
async def test_validate_price_on_empty_catalogue_returns_none(empty_gateway, clock):
    cache = CatalogCache(empty_gateway, clock=clock)

    assert await cache.validate_price("basic", "monthly") is None


@pytest.mark.asyncio
async def test_find_plan(cache):
    plan = await cache.find_plan("pro-plan")

    assert plan is not None
    assert plan.product_id == "prod_pro"
    assert plan.features == ("Unlimited listings", "Priority support")
    assert await cache.find_plan("missing") is None


@pytest.mark.asyncio
async def test_refresh_listeners_receive_published_snapshots(cache):
    seen = []

    async def async_listener(snapshot):
        seen.append(("async", len(snapshot.plans)))

    def failing_listener(snapshot):
        raise RuntimeError("listener broke")

    remove = cache.add_refresh_listener(async_listener)
    cache.add_refresh_listener(failing_listener)

    snapshot = await cache.refresh()
    assert seen == [("async", 2)]
    assert cache.snapshot is snapshot

    remove()
    await cache.refresh()
    assert seen == [("async", 2)]


@pytest.mark.asyncio
async def test_slow_listener_cannot_apply_older_snapshot_last(cache, gateway):
    mirrored = []
    blocked = asyncio.Event()
    release = asyncio.Event()

    async def slow_mirror(snapshot):
        if not blocked.is_set():
            blocked.set()
            await release.wait()
        mirrored.append([plan.plan_id for plan in snapshot.plans])

    cache.add_refresh_listener(slow_mirror)

    first = asyncio.ensure_future(cache.refresh())
    await blocked.wait()

    gateway.products = gateway.products[:1]
    second = asyncio.ensure_future(cache.refresh())
    for _ in range(10):
        await asyncio.sleep(0)
    assert [plan.plan_id for plan in cache.snapshot.plans] == ["basic"]
    assert mirrored == []

    release.set()
    await asyncio.gather(first, second)

    assert mirrored == [["pro-plan", "basic"], ["basic"]]
    assert mirrored[-1] == [plan.plan_id for plan in cache.snapshot.plans]


@pytest.mark.asyncio
async def test_superseded_snapshot_waiting_for_listeners_is_skipped(cache, gateway):
    delivered = []
    blocked = asyncio.Event()
    release = asyncio.Event()

    async def slow_listener(snapshot):
        delivered.append(len(snapshot.plans))
        if len(delivered) == 1:
            blocked.set()
            await release.wait()

    cache.add_refresh_listener(slow_listener)

    first = asyncio.ensure_future(cache.refresh())
    await blocked.wait()
    second = asyncio.ensure_future(cache.refresh())
    for _ in range(10):
        await asyncio.sleep(0)
    gateway.products = gateway.products[:1]
    third = asyncio.ensure_future(cache.refresh())
    for _ in range(10):
        await asyncio.sleep(0)

    release.set()
    await asyncio.gather(first, second, third)

    assert delivered == [2, 1]


@pytest.mark.asyncio
async def test_snapshot_inspection_does_not_refresh(cache, gateway):
    assert cache.is_stale()
    assert not cache.snapshot.populated
    assert gateway.product_calls == 0


@pytest.mark.asyncio
async def test_failed_refresh_is_logged_once(cache, gateway, caplog):
    gateway.error = RuntimeError("stripe down")

    with caplog.at_level(logging.DEBUG, logger="billing.catalog_cache"):
        with pytest.raises(RuntimeError):
            await cache.refresh()

    records = [record for record in caplog.records if record.name == "billing.catalog_cache"]
    assert len(records) == 1
    assert records[0].levelno == logging.ERROR
