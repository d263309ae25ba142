"""
Unit Tests for the Polling Fallback Scheduler
Tests for: periodic refetch, profiles, automatic cancellation
"""
import asyncio

import pytest

from fly8sync.config import PollingOptions, SyncConfig
from fly8sync.polling import PollingScheduler
from fly8sync.query_key import QueryKey

STATS = QueryKey.of("studentStats")


def counting_fetcher():
    calls = []

    async def fetcher():
        calls.append(1)
        return len(calls)

    return fetcher, calls


class TestSchedule:
    """Timers run while the key has subscribers"""

    @pytest.mark.asyncio
    async def test_poll_refetches_periodically(self, store):
        """Test a scheduled key is fetched again after each interval"""
        scheduler = PollingScheduler(store, SyncConfig())
        fetcher, calls = counting_fetcher()
        store.subscribe(STATS, fetcher)

        assert scheduler.schedule(STATS, interval=0.02) is True
        await asyncio.sleep(0.09)
        await scheduler.shutdown()

        assert len(calls) >= 3

    @pytest.mark.asyncio
    async def test_polling_stops_after_last_unsubscribe(self, store):
        """Test the timer is cancelled when the key goes inactive"""
        scheduler = PollingScheduler(store, SyncConfig())
        fetcher, calls = counting_fetcher()
        unsubscribe = store.subscribe(STATS, fetcher)
        scheduler.schedule(STATS, interval=0.02)
        await store.wait_idle()

        unsubscribe()
        assert scheduler.is_scheduled(STATS) is False

        before = len(calls)
        await asyncio.sleep(0.06)
        assert len(calls) == before

    @pytest.mark.asyncio
    async def test_profile_interval(self, store):
        """Test named profiles supply the interval"""
        config = SyncConfig()
        scheduler = PollingScheduler(store, config)
        fetcher, _ = counting_fetcher()
        store.subscribe(STATS, fetcher)

        assert scheduler.schedule(STATS, profile="today") is True
        assert scheduler.interval_for(STATS) == 60.0
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_disabled_profile_returns_false(self, store):
        """Test a disabled profile does not schedule"""
        config = SyncConfig()
        config.polling["stats"] = PollingOptions(interval=30.0, enabled=False)
        scheduler = PollingScheduler(store, config)

        assert scheduler.schedule(STATS, profile="stats") is False
        assert scheduler.is_scheduled(STATS) is False

    @pytest.mark.asyncio
    async def test_global_disable(self, store):
        """Test polling_enabled=False turns every schedule off"""
        scheduler = PollingScheduler(store, SyncConfig(polling_enabled=False))

        assert scheduler.schedule(STATS, interval=5.0) is False

    @pytest.mark.asyncio
    async def test_schedule_before_subscribe_starts_on_activation(self, store):
        """Test a timer registered early starts with the first subscriber"""
        scheduler = PollingScheduler(store, SyncConfig())
        scheduler.schedule(STATS, interval=10.0)
        assert scheduler.is_scheduled(STATS) is False

        fetcher, _ = counting_fetcher()
        store.subscribe(STATS, fetcher)
        assert scheduler.is_scheduled(STATS) is True
        await scheduler.shutdown()
        await store.wait_idle()

    @pytest.mark.asyncio
    async def test_event_refetch_does_not_reset_timer(self, store):
        """Test out-of-cycle invalidations leave the poll task alone"""
        scheduler = PollingScheduler(store, SyncConfig())
        fetcher, _ = counting_fetcher()
        store.subscribe(STATS, fetcher)
        scheduler.schedule(STATS, interval=10.0)
        task = scheduler._tasks[STATS]

        store.invalidate(STATS)
        await store.wait_idle()

        assert scheduler._tasks[STATS] is task
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_cancel(self, store):
        """Test explicit cancel"""
        scheduler = PollingScheduler(store, SyncConfig())
        fetcher, _ = counting_fetcher()
        store.subscribe(STATS, fetcher)
        scheduler.schedule(STATS, interval=10.0)

        scheduler.cancel(STATS)

        assert scheduler.is_scheduled(STATS) is False
        assert scheduler.interval_for(STATS) is None
        await store.wait_idle()

    @pytest.mark.asyncio
    async def test_tick_during_slow_fetch_joins_it(self, store):
        """Test poll ticks that land mid-request do not queue another fetch"""
        scheduler = PollingScheduler(store, SyncConfig())
        gate = asyncio.Event()
        calls = []

        async def slow_fetcher():
            calls.append(1)
            await gate.wait()
            return len(calls)

        store.subscribe(STATS, slow_fetcher)
        scheduler.schedule(STATS, interval=0.01)
        await asyncio.sleep(0.05)
        await scheduler.shutdown()

        assert store.get(STATS).refetch_pending is False
        gate.set()
        await store.wait_idle()

        assert len(calls) == 1
        assert store.get(STATS).data == 1
