"""
Cached Query Store - key-addressed cache of server responses

Every entry is tagged with a QueryKey and a staleness flag:

    store = QueryStore.from_config(config)
    unsubscribe = store.subscribe(QueryKey.of("studentStats"), api.students.stats)
    ...
    store.invalidate("students")      # every students{...} page
    unsubscribe()

Rules:
- At most one fetch in flight per key. A fetch requested meanwhile marks the
  entry for one more fetch when the current one completes.
- Stale-while-revalidate: ``data`` stays readable while a refetch runs.
- Invalidation refetches live keys at once and defers the rest until the
  next subscription.
- Every request carries a generation number; a response for an older
  generation is discarded.
- The in-flight check and the fetch start happen with no await in between.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from fly8sync.config import SyncConfig
from fly8sync.exceptions import MutationError, RequestTimeoutError, describe_error
from fly8sync.logging_config import get_logger
from fly8sync.query_key import KeyLike, QueryKey

logger = get_logger("store")

T = TypeVar("T")
Fetcher = Callable[[], Awaitable[Any]]
EntryListener = Callable[["CacheEntry"], Any]
StoreListener = Callable[[QueryKey, "CacheEntry"], Any]
LifecycleListener = Callable[[QueryKey, bool], Any]

_MISSING = object()


@dataclass
class CacheEntry:
    """Cached result of one query"""
    key: QueryKey
    data: Any = None
    fetched_at: Optional[float] = None
    is_stale: bool = True
    is_fetching: bool = False
    error: Optional[Exception] = None

    generation: int = 0
    refetch_pending: bool = False
    subscriber_count: int = 0
    inactive_since: Optional[float] = None
    updated_at: float = 0.0
    fetcher: Optional[Fetcher] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    @property
    def is_loading(self) -> bool:
        """First load: fetching with nothing to show yet"""
        return self.is_fetching and not self.has_data

    @property
    def is_active(self) -> bool:
        return self.subscriber_count > 0


class QueryStore:
    """
    Process-wide cache shared by every view. Instantiate one per session
    (or per test); it is not a module-level singleton.
    """

    def __init__(
        self,
        request_timeout: Optional[float] = 30.0,
        gc_time: float = 300.0,
        max_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.request_timeout = request_timeout
        self.gc_time = gc_time
        self.max_entries = max_entries
        self._clock = clock
        self._wall_clock = wall_clock
        self._entries: Dict[QueryKey, CacheEntry] = {}
        self._entry_listeners: Dict[QueryKey, List[EntryListener]] = defaultdict(list)
        self._listeners: List[StoreListener] = []
        self._lifecycle_listeners: List[LifecycleListener] = []
        self.fetch_count = 0

    @classmethod
    def from_config(cls, config: SyncConfig) -> "QueryStore":
        return cls(
            request_timeout=config.request_timeout,
            gc_time=config.gc_time,
            max_entries=config.max_cache_entries,
        )

    # ========== Reads ==========

    def get(self, key: KeyLike) -> CacheEntry:
        """Current entry, created empty (unfetched, stale) when absent"""
        key = QueryKey.parse(key)
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, inactive_since=self._clock())
            self._entries[key] = entry
        return entry

    def peek(self, key: KeyLike) -> Optional[CacheEntry]:
        return self._entries.get(QueryKey.parse(key))

    def get_data(self, key: KeyLike, default: Any = None) -> Any:
        entry = self.peek(key)
        if entry is None or not entry.has_data:
            return default
        return entry.data

    def keys(self) -> List[QueryKey]:
        return list(self._entries)

    def __contains__(self, key: KeyLike) -> bool:
        return QueryKey.parse(key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ========== Transitions ==========

    def set_fetching(self, key: KeyLike) -> CacheEntry:
        entry = self.get(key)
        entry.is_fetching = True
        entry.error = None
        self._touch(entry)
        return entry

    def set_data(self, key: KeyLike, data: Any) -> CacheEntry:
        entry = self.get(key)
        entry.data = data
        entry.fetched_at = self._wall_clock()
        entry.is_stale = False
        entry.is_fetching = False
        entry.error = None
        self._touch(entry)
        return entry

    def set_error(self, key: KeyLike, error: Exception) -> CacheEntry:
        # Previous data is kept: stale-but-present beats empty
        entry = self.get(key)
        entry.error = error
        entry.is_fetching = False
        self._touch(entry)
        return entry

    def _touch(self, entry: CacheEntry) -> None:
        entry.updated_at = self._clock()
        self._notify(entry)

    # ========== Subscriptions ==========

    def subscribe(
        self,
        key: KeyLike,
        fetcher: Optional[Fetcher] = None,
        listener: Optional[EntryListener] = None,
    ) -> Callable[[], None]:
        """
        Declare interest in ``key``. Starts a fetch when the entry is stale
        and idle. Returns an idempotent ``unsubscribe()``.
        """
        entry = self.get(key)
        key = entry.key
        if fetcher is not None:
            entry.fetcher = fetcher
        if listener is not None:
            self._entry_listeners[key].append(listener)

        entry.subscriber_count += 1
        entry.inactive_since = None
        if entry.subscriber_count == 1:
            self._emit_lifecycle(key, True)

        if entry.is_stale and not entry.is_fetching:
            self.fetch(key)

        released = False

        def unsubscribe() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release(key, listener)

        return unsubscribe

    def _release(self, key: QueryKey, listener: Optional[EntryListener]) -> None:
        if listener is not None and listener in self._entry_listeners.get(key, ()):
            self._entry_listeners[key].remove(listener)
            if not self._entry_listeners[key]:
                del self._entry_listeners[key]

        entry = self._entries.get(key)
        if entry is None:
            return
        entry.subscriber_count = max(entry.subscriber_count - 1, 0)
        if entry.subscriber_count == 0:
            entry.inactive_since = self._clock()
            self._emit_lifecycle(key, False)
            self.collect_garbage()

    def subscriber_count(self, key: KeyLike) -> int:
        entry = self.peek(key)
        return entry.subscriber_count if entry else 0

    # ========== Fetching ==========

    def fetch(self, key: KeyLike, cancel_in_flight: bool = False) -> Optional[asyncio.Task]:
        """
        Start a fetch for ``key`` unless one is already running.

        A request that finds one in flight joins it; only ``invalidate``
        queues a follow-up fetch. With ``cancel_in_flight`` a new request
        is issued right away; the older one is left to finish and its
        response is discarded.
        """
        entry = self.get(key)
        if entry.fetcher is None:
            logger.log_cache_event("skip", str(entry.key), reason="no fetcher")
            return None

        if entry.is_fetching and not cancel_in_flight:
            return entry.task

        entry.generation += 1
        entry.refetch_pending = False
        self.set_fetching(entry.key)
        self.fetch_count += 1
        logger.log_cache_event("fetch", str(entry.key), generation=entry.generation)

        entry.task = asyncio.get_running_loop().create_task(
            self._run_fetch(entry.key, entry.fetcher, entry.generation)
        )
        return entry.task

    async def _run_fetch(self, key: QueryKey, fetcher: Fetcher, generation: int) -> None:
        try:
            if self.request_timeout:
                data = await asyncio.wait_for(fetcher(), timeout=self.request_timeout)
            else:
                data = await fetcher()
        except asyncio.CancelledError:
            entry = self._entries.get(key)
            if entry is not None and entry.generation == generation:
                entry.is_fetching = False
                entry.task = None
            raise
        except asyncio.TimeoutError:
            self._complete(key, generation, error=RequestTimeoutError(self.request_timeout, str(key)))
        except Exception as e:
            self._complete(key, generation, error=e)
        else:
            self._complete(key, generation, data=data)

    def _complete(self, key: QueryKey, generation: int, data: Any = _MISSING,
                  error: Optional[Exception] = None) -> None:
        entry = self._entries.get(key)
        if entry is None:
            logger.log_cache_event("drop", str(key), reason="entry collected")
            return
        if generation != entry.generation:
            logger.log_cache_event("discard", str(key), generation=generation, current=entry.generation)
            return

        entry.task = None
        if error is not None:
            if entry.is_active:
                logger.warning(f"Fetch failed for {key}: {describe_error(error)}")
            else:
                logger.debug(f"Fetch failed for inactive {key}: {describe_error(error)}")
            self.set_error(key, error)
        else:
            if not entry.is_active:
                logger.log_cache_event("late", str(key), reason="no subscribers")
            self.set_data(key, data)

        # Invalidated while in flight: what we just stored may predate the change
        if entry.refetch_pending:
            entry.refetch_pending = False
            entry.is_stale = True
            if entry.is_active:
                self.fetch(key)

    async def wait_idle(self) -> None:
        """Wait until no fetch is in flight (follow-up fetches included)"""
        while True:
            tasks = [e.task for e in self._entries.values() if e.task is not None and not e.task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ========== Invalidation ==========

    def invalidate(self, key_or_prefix: KeyLike) -> List[QueryKey]:
        """Mark every matching entry stale; refetch the ones being watched"""
        prefix = QueryKey.parse(key_or_prefix)
        matched = [key for key in self._entries if key.matches(prefix)]

        for key in matched:
            entry = self._entries.get(key)
            if entry is None:
                continue
            entry.is_stale = True
            logger.log_cache_event("invalidate", str(key), prefix=str(prefix))
            if entry.is_fetching:
                entry.refetch_pending = True
                self._notify(entry)
            elif entry.is_active:
                self.fetch(key)
            else:
                self._notify(entry)

        return matched

    async def mutate(
        self,
        operation: Callable[[], Awaitable[T]],
        invalidate: Iterable[KeyLike] = (),
        name: str = "mutation",
    ) -> T:
        """
        Run a server mutation, then invalidate the affected keys.

        Failures raise MutationError and leave the cache untouched.
        """
        try:
            result = await operation()
        except Exception as e:
            logger.warning(f"{name} failed: {describe_error(e)}")
            raise MutationError(e, name) from e

        for key in invalidate:
            self.invalidate(key)
        return result

    # ========== Listeners ==========

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """Called with ``(key, entry)`` on every entry change"""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def add_lifecycle_listener(self, listener: LifecycleListener) -> Callable[[], None]:
        """Called with ``(key, active)`` when a key gains its first or loses its last subscriber"""
        self._lifecycle_listeners.append(listener)
        return lambda: self._lifecycle_listeners.remove(listener) if listener in self._lifecycle_listeners else None

    def _notify(self, entry: CacheEntry) -> None:
        for listener in list(self._entry_listeners.get(entry.key, ())):
            self._call(listener, entry)
        for listener in list(self._listeners):
            self._call(listener, entry.key, entry)

    def _emit_lifecycle(self, key: QueryKey, active: bool) -> None:
        for listener in list(self._lifecycle_listeners):
            self._call(listener, key, active)

    @staticmethod
    def _call(listener: Callable, *args) -> None:
        try:
            listener(*args)
        except Exception as e:
            logger.log_error_with_context(e, context="cache listener")

    # ========== Housekeeping ==========

    def collect_garbage(self) -> List[QueryKey]:
        """Drop entries nobody watched for ``gc_time``, then trim to ``max_entries``"""
        now = self._clock()
        idle = [
            (key, entry) for key, entry in self._entries.items()
            if not entry.is_active and not entry.is_fetching
        ]
        removed = [
            key for key, entry in idle
            if entry.inactive_since is not None and now - entry.inactive_since >= self.gc_time
        ]

        overflow = len(self._entries) - len(removed) - self.max_entries
        if overflow > 0:
            survivors = sorted(
                (pair for pair in idle if pair[0] not in removed),
                key=lambda pair: pair[1].inactive_since or 0.0,
            )
            removed.extend(key for key, _ in survivors[:overflow])

        for key in removed:
            del self._entries[key]
            logger.log_cache_event("gc", str(key))
        return removed

    def clear(self) -> None:
        """Cancel every fetch and drop all entries"""
        for entry in self._entries.values():
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()
        self._entries.clear()
        self._entry_listeners.clear()


class QueryObserver:
    """
    Follows a query whose key changes over time (page, search, filters).

    With ``keep_previous_data`` the previous key's data stays visible until
    the new key has loaded, so a table never flashes empty between pages.
    """

    def __init__(
        self,
        store: QueryStore,
        keep_previous_data: bool = True,
        listener: Optional[Callable[["QueryObserver"], Any]] = None,
    ):
        self.store = store
        self.keep_previous_data = keep_previous_data
        self.key: Optional[QueryKey] = None
        self._listener = listener
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._previous_data: Any = _MISSING

    def set_query(self, key: KeyLike, fetcher: Fetcher) -> None:
        key = QueryKey.parse(key)
        if key == self.key and self._unsubscribe is not None:
            return

        if self.key is not None:
            current = self.store.peek(self.key)
            if current is not None and current.has_data:
                self._previous_data = current.data
        if self._unsubscribe is not None:
            self._unsubscribe()

        self.key = key
        self._unsubscribe = self.store.subscribe(key, fetcher, self._on_change)
        self._on_change(self.store.get(key))

    def _on_change(self, entry: CacheEntry) -> None:
        if self._listener is not None:
            self._listener(self)

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self.store.peek(self.key) if self.key is not None else None

    @property
    def is_placeholder(self) -> bool:
        entry = self.entry
        return (
            self.keep_previous_data
            and self._previous_data is not _MISSING
            and (entry is None or not entry.has_data)
        )

    @property
    def data(self) -> Any:
        entry = self.entry
        if entry is not None and entry.has_data:
            return entry.data
        if self.is_placeholder:
            return self._previous_data
        return None

    @property
    def is_fetching(self) -> bool:
        entry = self.entry
        return bool(entry and entry.is_fetching)

    @property
    def error(self) -> Optional[Exception]:
        entry = self.entry
        return entry.error if entry else None

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
