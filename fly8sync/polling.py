"""
Polling Fallback Scheduler

Keeps watched queries fresh when the event channel is down or silent. Each
scheduled key gets one background task that sleeps ``interval`` seconds and
asks the store for a (de-duplicated) fetch. The task lives only while the key
has subscribers: the scheduler listens to the store's lifecycle transitions and
cancels the timer when the last subscriber leaves.

Event-driven refetches go straight to the store and never touch these timers.
"""

import asyncio
from typing import Dict, Optional

from fly8sync.config import SyncConfig
from fly8sync.logging_config import get_logger
from fly8sync.query_key import KeyLike, QueryKey
from fly8sync.store import QueryStore

logger = get_logger("polling")


class PollingScheduler:
    """Periodic refetch for active queries"""

    def __init__(self, store: QueryStore, config: Optional[SyncConfig] = None):
        self.store = store
        self.config = config or SyncConfig()
        self._intervals: Dict[QueryKey, float] = {}
        self._tasks: Dict[QueryKey, asyncio.Task] = {}
        self._remove_listener = store.add_lifecycle_listener(self._on_lifecycle)

    def _resolve_interval(self, interval: Optional[float], profile: Optional[str]) -> Optional[float]:
        if not self.config.polling_enabled:
            return None
        if interval is not None:
            return interval if interval > 0 else None
        if profile is None:
            return None
        options = self.config.polling_for(profile)
        return options.interval if options else None

    def schedule(self, key: KeyLike, interval: Optional[float] = None, profile: Optional[str] = None) -> bool:
        """
        Refetch ``key`` every ``interval`` seconds (or the named profile's
        interval) while it has subscribers.

        Returns False when polling is disabled for this request.
        """
        key = QueryKey.parse(key)
        seconds = self._resolve_interval(interval, profile)
        if seconds is None:
            logger.debug(f"Polling disabled for {key} (profile={profile})")
            return False

        if self._intervals.get(key) == seconds and key in self._tasks:
            return True

        self._intervals[key] = seconds
        self._stop_timer(key)
        if self.store.subscriber_count(key) > 0:
            self._start_timer(key)
        return True

    def cancel(self, key: KeyLike) -> None:
        key = QueryKey.parse(key)
        self._intervals.pop(key, None)
        self._stop_timer(key)

    def is_scheduled(self, key: KeyLike) -> bool:
        return QueryKey.parse(key) in self._tasks

    def interval_for(self, key: KeyLike) -> Optional[float]:
        return self._intervals.get(QueryKey.parse(key))

    def _on_lifecycle(self, key: QueryKey, active: bool) -> None:
        if active:
            if key in self._intervals and key not in self._tasks:
                self._start_timer(key)
        elif key in self._intervals:
            logger.debug(f"Stopped polling {key}: no subscribers")
            self.cancel(key)

    def _start_timer(self, key: QueryKey) -> None:
        interval = self._intervals[key]

        async def poll_loop():
            while True:
                await asyncio.sleep(interval)
                try:
                    self.store.fetch(key)
                except Exception as e:
                    logger.log_error_with_context(e, context=f"poll tick for {key}")

        self._tasks[key] = asyncio.get_running_loop().create_task(poll_loop())
        logger.debug(f"Polling {key} every {interval}s")

    def _stop_timer(self, key: QueryKey) -> None:
        task = self._tasks.pop(key, None)
        if task is not None:
            task.cancel()

    async def shutdown(self) -> None:
        """Cancel every timer and wait for them to finish"""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._intervals.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def close(self) -> None:
        """Detach from the store; call ``shutdown()`` first to stop timers"""
        self._remove_listener()
