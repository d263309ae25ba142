"""
Small helpers shared by the view models.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Union

Timestamp = Union[datetime, str, None]


def parse_timestamp(value: Timestamp) -> Optional[datetime]:
    """Accept datetimes and ISO-8601 strings (``Z`` suffix included)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_time_ago(now: Timestamp, timestamp: Timestamp) -> str:
    """
    Relative label for ``timestamp`` as seen at ``now``.

    <60s "Just now", <1h "{m}m ago", <1d "{h}h ago", otherwise YYYY-MM-DD.
    """
    ts = parse_timestamp(timestamp)
    current = parse_timestamp(now)
    if ts is None or current is None:
        return "Unknown"

    seconds = int((_as_utc(current) - _as_utc(ts)).total_seconds())
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return ts.strftime("%Y-%m-%d")


def page_numbers(page: int, total_pages: int, max_pages: int = 5) -> List[Union[int, str]]:
    """
    Page buttons with ellipses, e.g. ``[1, "...", 4, 5, 6, "...", 10]``.
    """
    if total_pages <= 0:
        return []
    if total_pages <= max_pages:
        return list(range(1, total_pages + 1))

    pages: List[Union[int, str]] = [1]
    if page > 3:
        pages.append("...")

    start = max(2, page - 1)
    end = min(total_pages - 1, page + 1)
    pages.extend(range(start, end + 1))

    if page < total_pages - 2:
        pages.append("...")
    pages.append(total_pages)
    return pages


class Debouncer:
    """
    Delays ``callback(value)`` until ``delay`` seconds pass without a new push.

    Usage:
        debouncer = Debouncer(0.5, view.apply_search)
        debouncer.push("an")
        debouncer.push("ana")     # only "ana" is delivered
    """

    def __init__(self, delay: float, callback: Callable[[Any], Any]):
        self.delay = delay
        self.callback = callback
        self._task: Optional[asyncio.Task] = None
        self._value: Any = None
        self._pending = False

    @property
    def pending(self) -> bool:
        return self._pending

    def push(self, value: Any) -> None:
        self._value = value
        self._pending = True
        self._cancel_timer()
        self._task = asyncio.get_running_loop().create_task(self._wait())

    async def _wait(self) -> None:
        await asyncio.sleep(self.delay)
        self._task = None
        await self._fire()

    async def _fire(self) -> None:
        if not self._pending:
            return
        self._pending = False
        result = self.callback(self._value)
        if asyncio.iscoroutine(result):
            await result

    async def flush(self) -> None:
        """Deliver the pending value now"""
        self._cancel_timer()
        await self._fire()

    def cancel(self) -> None:
        self._cancel_timer()
        self._pending = False

    def _cancel_timer(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
