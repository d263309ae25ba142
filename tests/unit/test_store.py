"""
Unit Tests for the Cached Query Store
Tests for: de-duplication, stale-while-revalidate, prefix invalidation,
request generations, garbage collection, mutations, observers
"""
import asyncio

import pytest

from fly8sync.exceptions import ApiError, MutationError, RequestTimeoutError
from fly8sync.query_key import QueryKey
from fly8sync.store import QueryObserver, QueryStore
from tests.conftest import fake, settle

STATS = QueryKey.of("studentStats")


class Counter:
    """Fetcher returning 1, 2, 3...; calls can be held open with ``hold``"""

    def __init__(self):
        self.calls = 0
        self.gates = {}

    def hold(self, call_number: int) -> asyncio.Event:
        self.gates[call_number] = asyncio.Event()
        return self.gates[call_number]

    async def __call__(self):
        self.calls += 1
        number = self.calls
        gate = self.gates.get(number)
        if gate is not None:
            await gate.wait()
        return number


class TestDeduplication:
    """At most one fetch in flight per key"""

    @pytest.mark.asyncio
    async def test_two_invalidations_in_flight_cause_exactly_one_refetch(self, store):
        """Test two invalidations during a fetch give one follow-up fetch"""
        fetcher = Counter()
        gate = fetcher.hold(1)
        store.subscribe(STATS, fetcher)
        await settle()

        store.invalidate(STATS)
        store.invalidate(STATS)
        assert store.fetch_count == 1

        gate.set()
        await store.wait_idle()

        assert fetcher.calls == 2
        assert store.fetch_count == 2
        assert store.get(STATS).data == 2

    @pytest.mark.asyncio
    async def test_no_invalidation_no_refetch(self, store):
        """Test a plain fetch is not repeated"""
        fetcher = Counter()
        store.subscribe(STATS, fetcher)
        await store.wait_idle()

        assert fetcher.calls == 1
        assert store.get(STATS).refetch_pending is False

    @pytest.mark.asyncio
    async def test_fetch_while_in_flight_returns_same_task(self, store):
        """Test a second fetch request joins the running one"""
        fetcher = Counter()
        fetcher.hold(1)
        store.subscribe(STATS, fetcher)

        first = store.get(STATS).task
        second = store.fetch(STATS)

        assert second is first
        assert store.fetch_count == 1
        assert store.get(STATS).refetch_pending is False
        fetcher.gates[1].set()
        await store.wait_idle()

        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_second_subscriber_does_not_refetch(self, store):
        """Test a fresh entry is shared without a new request"""
        fetcher = Counter()
        store.subscribe(STATS, fetcher)
        await store.wait_idle()

        store.subscribe(STATS, fetcher)
        await store.wait_idle()

        assert fetcher.calls == 1
        assert store.subscriber_count(STATS) == 2


class TestStaleWhileRevalidate:
    """Previous data stays readable during a refetch"""

    @pytest.mark.asyncio
    async def test_invalidate_keeps_data_and_marks_stale(self, store):
        """Test data = X and is_stale = True before the refetch resolves"""
        fetcher = Counter()
        store.subscribe(STATS, fetcher)
        await store.wait_idle()
        store.set_data(STATS, "X")

        gate = fetcher.hold(2)
        store.invalidate(STATS)
        entry = store.get(STATS)

        assert entry.data == "X"
        assert entry.is_stale is True
        assert entry.is_fetching is True
        assert entry.is_loading is False

        gate.set()
        await store.wait_idle()
        assert entry.is_stale is False
        assert entry.data == 2

    @pytest.mark.asyncio
    async def test_error_keeps_previous_data(self, store):
        """Test a failed refetch stores the error and keeps the data"""
        calls = []

        async def fetcher():
            calls.append(1)
            if len(calls) > 1:
                raise ApiError(500, "Server exploded")
            return {"total": 10}

        store.subscribe(STATS, fetcher)
        await store.wait_idle()
        store.invalidate(STATS)
        await store.wait_idle()

        entry = store.get(STATS)
        assert entry.data == {"total": 10}
        assert isinstance(entry.error, ApiError)
        assert entry.is_fetching is False

    @pytest.mark.asyncio
    async def test_new_fetch_clears_error(self, store):
        """Test set_fetching clears a stored error"""
        store.set_error(STATS, ApiError(500))
        store.set_fetching(STATS)

        assert store.get(STATS).error is None

    @pytest.mark.asyncio
    async def test_timeout_sets_request_timeout_error(self):
        """Test a slow fetch fails with RequestTimeoutError"""
        store = QueryStore(request_timeout=0.01)

        async def fetcher():
            await asyncio.sleep(1)

        store.subscribe(STATS, fetcher)
        await store.wait_idle()

        assert isinstance(store.get(STATS).error, RequestTimeoutError)


class TestPrefixInvalidation:
    """Invalidation by kind, ident and filter subsets"""

    @pytest.mark.asyncio
    async def test_students_prefix_leaves_messages_untouched(self, store):
        """Test 'students' marks every page stale but not messages"""
        page1 = QueryKey.of("students", page=1)
        page2 = QueryKey.of("students", page=2)
        messages = QueryKey.of("messages", "c1", page=1)
        for key in (page1, page2, messages):
            store.set_data(key, fake.word())

        matched = store.invalidate("students")

        assert set(matched) == {page1, page2}
        assert store.get(page1).is_stale is True
        assert store.get(page2).is_stale is True
        assert store.get(messages).is_stale is False

    @pytest.mark.asyncio
    async def test_ident_prefix(self, store):
        """Test 'messages:c1' only touches that conversation"""
        c1 = QueryKey.of("messages", "c1")
        c2 = QueryKey.of("messages", "c2")
        store.set_data(c1, [])
        store.set_data(c2, [])

        store.invalidate("messages:c1")

        assert store.get(c1).is_stale is True
        assert store.get(c2).is_stale is False

    @pytest.mark.asyncio
    async def test_inactive_entry_is_refetched_on_next_subscribe(self, store):
        """Test lazy revalidation of entries without subscribers"""
        fetcher = Counter()
        unsubscribe = store.subscribe(STATS, fetcher)
        await store.wait_idle()
        unsubscribe()

        store.invalidate(STATS)
        await store.wait_idle()
        assert fetcher.calls == 1

        store.subscribe(STATS, fetcher)
        await store.wait_idle()
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_unknown_prefix_is_noop(self, store):
        """Test invalidating a prefix with no entries"""
        assert store.invalidate("feedback") == []


class TestRequestGenerations:
    """Older responses never overwrite newer ones"""

    @pytest.mark.asyncio
    async def test_slow_old_response_is_discarded(self, store):
        """Test a response from a superseded request is dropped"""
        fetcher = Counter()
        slow = fetcher.hold(1)
        store.subscribe(STATS, fetcher)
        old_task = store.get(STATS).task
        await settle()

        store.fetch(STATS, cancel_in_flight=True)
        await store.wait_idle()
        assert store.get(STATS).data == 2

        slow.set()
        await old_task

        entry = store.get(STATS)
        assert entry.data == 2
        assert entry.generation == 2

    @pytest.mark.asyncio
    async def test_late_response_after_unsubscribe_updates_cache(self, store, caplog):
        """Test a response for an unwatched key is kept without error logs"""
        fetcher = Counter()
        gate = fetcher.hold(1)
        unsubscribe = store.subscribe(STATS, fetcher)
        task = store.get(STATS).task
        unsubscribe()

        gate.set()
        await task

        assert store.get(STATS).data == 1
        assert not [r for r in caplog.records if r.levelname == "ERROR"]


class TestSubscriptions:
    """Subscription lifecycle and listeners"""

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self, store):
        """Test calling unsubscribe twice only releases once"""
        fetcher = Counter()
        first = store.subscribe(STATS, fetcher)
        store.subscribe(STATS, fetcher)

        first()
        first()

        assert store.subscriber_count(STATS) == 1
        await store.wait_idle()

    @pytest.mark.asyncio
    async def test_lifecycle_listener(self, store):
        """Test active/inactive transitions are reported once each"""
        events = []
        store.add_lifecycle_listener(lambda key, active: events.append((str(key), active)))
        fetcher = Counter()

        a = store.subscribe(STATS, fetcher)
        b = store.subscribe(STATS, fetcher)
        a()
        b()

        assert events == [("studentStats", True), ("studentStats", False)]
        await store.wait_idle()

    @pytest.mark.asyncio
    async def test_entry_listener_sees_changes(self, store):
        """Test the per-key listener is called on fetch and data"""
        seen = []
        store.subscribe(STATS, Counter(), listener=lambda entry: seen.append(entry.is_fetching))
        await store.wait_idle()

        assert seen == [True, False]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_store(self, store):
        """Test listener exceptions are isolated"""
        def broken(key, entry):
            raise RuntimeError("boom")

        store.add_listener(broken)
        store.set_data(STATS, 1)

        assert store.get(STATS).data == 1


class TestGarbageCollection:
    """Inactive entries are dropped"""

    @pytest.mark.asyncio
    async def test_entry_collected_after_gc_time(self):
        """Test inactive entries older than gc_time are removed"""
        now = [0.0]
        store = QueryStore(gc_time=10.0, clock=lambda: now[0])
        unsubscribe = store.subscribe(STATS, Counter())
        await store.wait_idle()
        unsubscribe()
        assert STATS in store

        now[0] = 11.0
        removed = store.collect_garbage()

        assert removed == [STATS]
        assert STATS not in store

    @pytest.mark.asyncio
    async def test_active_entries_are_kept(self):
        """Test subscribed entries survive collection"""
        now = [0.0]
        store = QueryStore(gc_time=1.0, clock=lambda: now[0])
        store.subscribe(STATS, Counter())
        await store.wait_idle()

        now[0] = 100.0
        assert store.collect_garbage() == []

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest_inactive_first(self):
        """Test max_entries trims the longest-idle entries"""
        now = [0.0]
        store = QueryStore(gc_time=1000.0, max_entries=2, clock=lambda: now[0])
        keys = [QueryKey.of("students", page=n) for n in range(1, 4)]
        for key in keys:
            now[0] += 1
            store.set_data(key, [])

        removed = store.collect_garbage()

        assert removed == [keys[0]]
        assert len(store) == 2


class TestMutations:
    """Mutations invalidate on success only"""

    @pytest.mark.asyncio
    async def test_success_invalidates_keys(self, store):
        """Test successful mutation marks listed prefixes stale"""
        students = QueryKey.of("students", page=1)
        store.set_data(students, [])
        store.set_data(STATS, {})

        async def operation():
            return {"success": True}

        result = await store.mutate(operation, invalidate=["students", "studentStats"])

        assert result == {"success": True}
        assert store.get(students).is_stale is True
        assert store.get(STATS).is_stale is True

    @pytest.mark.asyncio
    async def test_failure_raises_and_invalidates_nothing(self, store):
        """Test a failed mutation leaves the cache untouched"""
        store.set_data(STATS, {"total": 3})

        async def operation():
            raise ApiError(400, "Invalid student")

        with pytest.raises(MutationError) as exc_info:
            await store.mutate(operation, invalidate=["studentStats"])

        assert exc_info.value.message == "Invalid student"
        assert isinstance(exc_info.value.original, ApiError)
        assert store.get(STATS).is_stale is False


class TestQueryObserver:
    """Keep-previous-data while switching keys"""

    @pytest.mark.asyncio
    async def test_previous_page_shown_while_next_loads(self, store):
        """Test data falls back to the previous key as a placeholder"""
        page1 = QueryKey.of("students", page=1)
        page2 = QueryKey.of("students", page=2)
        gate = asyncio.Event()

        async def first():
            return ["ana"]

        async def second():
            await gate.wait()
            return ["ben"]

        observer = QueryObserver(store)
        observer.set_query(page1, first)
        await store.wait_idle()
        assert observer.data == ["ana"]

        observer.set_query(page2, second)
        assert observer.data == ["ana"]
        assert observer.is_placeholder is True

        gate.set()
        await store.wait_idle()
        assert observer.data == ["ben"]
        assert observer.is_placeholder is False
        observer.close()

    @pytest.mark.asyncio
    async def test_without_keep_previous_data(self, store):
        """Test data is None while the new key loads"""
        gate = asyncio.Event()

        async def first():
            return 1

        async def second():
            await gate.wait()
            return 2

        observer = QueryObserver(store, keep_previous_data=False)
        observer.set_query("studentStats", first)
        await store.wait_idle()
        observer.set_query("messageStats", second)

        assert observer.data is None
        gate.set()
        await store.wait_idle()
        observer.close()

    @pytest.mark.asyncio
    async def test_switching_releases_previous_key(self, store):
        """Test the old key loses its subscriber"""
        async def fetcher():
            return []

        observer = QueryObserver(store)
        observer.set_query("students", fetcher)
        observer.set_query("messages", fetcher)
        await store.wait_idle()

        assert store.subscriber_count("students") == 0
        assert store.subscriber_count("messages") == 1
        observer.close()
        assert store.subscriber_count("messages") == 0

    @pytest.mark.asyncio
    async def test_same_key_after_close_subscribes_again(self, store):
        """Test set_query on a closed observer is not skipped"""
        async def fetcher():
            return []

        observer = QueryObserver(store)
        observer.set_query("students", fetcher)
        await store.wait_idle()
        observer.close()

        observer.set_query("students", fetcher)

        assert store.subscriber_count("students") == 1
        observer.close()
