"""Unit tests for the TTL cache manager: freshness, fallback, single-flight."""

import asyncio

import pytest
from unittest.mock import AsyncMock, call

from iqstats.datasource.base import DataSourceError
from iqstats.services.cache import CacheEntry, CacheManager
from iqstats.services.fetch import fetch_results
from iqstats.services.retry import RetryExecutor

KEY = "results"
TTL = 300.0


async def load_results(datasource):
    return tuple(await fetch_results(datasource))


def make_manager(datasource, clock, retry=None):
    manager = CacheManager(datasource, retry=retry or RetryExecutor(max_retries=0), clock=clock)
    manager.register(KEY, load_results, TTL)
    return manager


class TestCacheEntry:

    def test_fresh_within_ttl(self):
        entry = CacheEntry(payload=[1], fetched_at=100.0, ttl=300.0, loaded=True)
        assert entry.is_fresh(399.9)
        assert not entry.is_fresh(400.0)

    def test_unloaded_entry_never_fresh(self):
        assert not CacheEntry(ttl=300.0).is_fresh(0.0)

    def test_register_twice_rejected(self, fake_datasource, clock):
        manager = make_manager(fake_datasource(), clock)
        with pytest.raises(ValueError):
            manager.register(KEY, load_results, TTL)

    def test_unknown_key(self, fake_datasource, clock):
        manager = make_manager(fake_datasource(), clock)
        with pytest.raises(KeyError):
            manager.entry("nope")


@pytest.mark.asyncio
class TestCacheManager:
    """Test suite for CacheManager.read and invalidation."""

    async def test_reads_within_ttl_fetch_once(self, fake_datasource, result_row, clock):
        """Reads one second apart inside a 5 minute TTL hit the DataSource once."""
        ds = fake_datasource([result_row(120), result_row(95)])
        manager = make_manager(ds, clock)

        first = await manager.read(KEY)
        clock.advance(1)
        second = await manager.read(KEY)

        assert ds.count_calls() == 1
        assert not first.served_from_cache
        assert second.served_from_cache
        assert second.payload is first.payload
        assert [r.score for r in first.payload] == [120, 95]

    async def test_expired_entry_refetches(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(100)])
        manager = make_manager(ds, clock)

        await manager.read(KEY)
        clock.advance(TTL)
        read = await manager.read(KEY)

        assert ds.count_calls() == 2
        assert not read.served_from_cache
        assert manager.entry(KEY).fetched_at == TTL

    async def test_clear_forces_exactly_one_fetch(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(100)])
        manager = make_manager(ds, clock)
        await manager.read(KEY)

        manager.clear(KEY)
        await manager.read(KEY)
        await manager.read(KEY)

        assert ds.count_calls() == 2

    async def test_invalidator_clears_bound_keys(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(100)])
        manager = make_manager(ds, clock)
        await manager.read(KEY)

        manager.invalidator(KEY).clear()

        assert not manager.entry(KEY).loaded

    async def test_refresh_ignores_freshness(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(100)])
        manager = make_manager(ds, clock)
        await manager.read(KEY)

        await manager.refresh(KEY)

        assert ds.count_calls() == 2

    async def test_stale_payload_served_when_refresh_fails(self, fake_datasource, result_row, clock, instant_retry):
        ds = fake_datasource([result_row(130)])
        manager = make_manager(ds, clock, retry=instant_retry)
        good = await manager.read(KEY)

        clock.advance(TTL + 1)
        ds.error = DataSourceError("upstream 503", status=503, retryable=True)
        read = await manager.read(KEY)

        assert read.payload is good.payload
        assert read.error is None
        assert read.stale
        assert read.served_from_cache
        # 1 good fetch + 3 failed attempts
        assert ds.count_calls() == 4
        assert instant_retry._sleep.await_args_list == [call(1.0), call(2.0)]

    async def test_stale_entry_replaced_after_recovery(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(130)])
        manager = make_manager(ds, clock)
        await manager.read(KEY)

        clock.advance(TTL + 1)
        ds.error = DataSourceError("down", retryable=False)
        assert (await manager.read(KEY)).stale

        ds.error = None
        ds.tables["user_test_results"].append(result_row(90))
        read = await manager.read(KEY)

        assert not read.stale
        assert len(read.payload) == 2

    async def test_hard_failure_returns_error_value(self, fake_datasource, clock):
        ds = fake_datasource()
        error = DataSourceError("permission denied", code="42501", status=401)
        ds.error = error
        manager = make_manager(ds, clock)

        read = await manager.read(KEY)

        assert read.payload is None
        assert read.error is error
        assert not manager.entry(KEY).loaded

    async def test_concurrent_cold_reads_share_one_fetch(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(110), result_row(140)])
        ds.gate = asyncio.Event()
        manager = make_manager(ds, clock)

        tasks = [asyncio.ensure_future(manager.read(KEY)) for _ in range(10)]
        await asyncio.sleep(0)
        assert manager.status()[KEY]["in_flight"]
        ds.gate.set()
        reads = await asyncio.gather(*tasks)

        assert ds.count_calls() == 1
        assert all(r.payload is reads[0].payload for r in reads)
        assert not manager.status()[KEY]["in_flight"]

    async def test_cancelled_caller_does_not_cancel_refresh(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(110)])
        ds.gate = asyncio.Event()
        manager = make_manager(ds, clock)

        impatient = asyncio.ensure_future(manager.read(KEY))
        patient = asyncio.ensure_future(manager.read(KEY))
        await asyncio.sleep(0)
        impatient.cancel()
        ds.gate.set()
        read = await patient

        assert read.payload is not None
        assert manager.entry(KEY).loaded
        assert ds.count_calls() == 1

    async def test_clear_during_refresh_discards_result(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(100)])
        ds.gate = asyncio.Event()
        manager = make_manager(ds, clock)

        pending = asyncio.ensure_future(manager.read(KEY))
        await asyncio.sleep(0)
        manager.clear(KEY)
        ds.gate.set()
        read = await pending

        # the waiting caller still gets data, but the cache stays empty
        assert read.payload is not None
        assert not manager.entry(KEY).loaded

        await manager.read(KEY)
        assert ds.count_calls() == 2
        assert manager.entry(KEY).loaded

    async def test_status_reports_each_key(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(100)])
        manager = make_manager(ds, clock)
        manager.register("other", AsyncMock(return_value=[]), 10.0)

        clock.advance(50)
        await manager.read(KEY)
        clock.advance(20)
        status = manager.status()

        assert status[KEY] == {
            "has_data": True,
            "fetched_at": 50,
            "age": 20,
            "ttl": TTL,
            "is_expired": False,
            "in_flight": False,
        }
        assert status["other"]["has_data"] is False
        assert status["other"]["is_expired"] is True

    async def test_clear_all(self, fake_datasource, result_row, clock):
        ds = fake_datasource([result_row(100)])
        manager = make_manager(ds, clock)
        manager.register("other", AsyncMock(return_value=["x"]), 10.0)
        await manager.read(KEY)
        await manager.read("other")

        manager.clear_all()

        assert not manager.entry(KEY).loaded
        assert not manager.entry("other").loaded
