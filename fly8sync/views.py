"""
View models over the query store.

A view declares what it watches when opened (cache subscriptions, polling
profiles, channel events) and releases all of it when closed:

    async with ConversationListView(ctx) as view:
        view.add_listener(lambda v: render(v.conversations))
        ...

Derived state (sorting, de-duplication, unread counts) is recomputed from the
cache on every read, so it always reflects the latest fetch.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from fly8sync.api_client import ApiClient
from fly8sync.config import SyncConfig
from fly8sync.events import EventName
from fly8sync.exceptions import MutationError
from fly8sync.logging_config import get_logger
from fly8sync.models import Conversation, Message, Notification, NotificationStatus, Page
from fly8sync.polling import PollingScheduler
from fly8sync.query_key import (
    APPOINTMENT_STATS,
    CONVERSATIONS,
    MESSAGE_STATS,
    MESSAGES,
    NOTIFICATION_STATS,
    NOTIFICATIONS,
    STUDENT,
    STUDENT_STATS,
    STUDENTS,
    TODAY_APPOINTMENTS,
    KeyLike,
    QueryKey,
)
from fly8sync.router import InvalidationRouter, RouterBinding
from fly8sync.store import CacheEntry, QueryObserver, QueryStore
from fly8sync.utils import Debouncer, page_numbers

logger = get_logger("views")

ViewListener = Callable[["LiveView"], Any]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_time(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ViewContext:
    """Collaborators every view needs"""
    store: QueryStore
    api: ApiClient
    config: SyncConfig
    scheduler: Optional[PollingScheduler] = None
    router: Optional[InvalidationRouter] = None
    channel: Any = None


class LiveView:
    """Base class: subscription lifecycle and change listeners"""

    events: Sequence[EventName] = ()

    def __init__(self, ctx: ViewContext, events: Optional[Iterable[EventName]] = None):
        self.ctx = ctx
        self.store = ctx.store
        self.api = ctx.api
        if events is not None:
            self.events = tuple(events)
        self.is_open = False
        self._subscriptions: List[Callable[[], None]] = []
        self._binding: Optional[RouterBinding] = None
        self._listeners: List[ViewListener] = []

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> None:
        if self.is_open:
            return
        self.is_open = True
        if self.ctx.router is not None and self.events:
            self._binding = self.ctx.router.attach(self.events)
        self._subscribe()

    def _subscribe(self) -> None:
        """Declare cache subscriptions; overridden by each view"""

    async def close(self) -> None:
        if not self.is_open:
            return
        self.is_open = False
        if self._binding is not None:
            self._binding.detach()
            self._binding = None
        subscriptions, self._subscriptions = self._subscriptions, []
        for unsubscribe in subscriptions:
            unsubscribe()

    def _watch(self, key: KeyLike, fetcher, profile: Optional[str] = None) -> QueryKey:
        key = QueryKey.parse(key)
        self._subscriptions.append(self.store.subscribe(key, fetcher, self._on_entry_change))
        if self.ctx.scheduler is not None and profile:
            self.ctx.scheduler.schedule(key, profile=profile)
        return key

    def _data(self, key: KeyLike, default: Any = None) -> Any:
        return self.store.get_data(key, default)

    def entry(self, key: KeyLike) -> Optional[CacheEntry]:
        return self.store.peek(key)

    async def wait_ready(self) -> None:
        """Wait for every in-flight fetch to settle"""
        await self.store.wait_idle()

    # ========== Change notification ==========

    def add_listener(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _on_entry_change(self, entry: CacheEntry) -> None:
        self._changed()

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.log_error_with_context(e, context=f"{type(self).__name__} listener")

    async def _mutate(self, name: str, operation, invalidate: Iterable[KeyLike]) -> Any:
        return await self.store.mutate(operation, invalidate=list(invalidate), name=name)


# ============================================
# Messages
# ============================================

class MessageThreadView(LiveView):
    """Messages of one conversation plus the compose box"""

    def __init__(
        self,
        ctx: ViewContext,
        conversation_id: str,
        student_id: Optional[str] = None,
        events: Optional[Iterable[EventName]] = None,
        limit: int = 50,
    ):
        super().__init__(ctx, events)
        self.conversation_id = conversation_id
        self.student_id = student_id
        self.limit = limit
        self.key = QueryKey.of(MESSAGES, conversation_id)
        self.draft = ""
        self._message_listeners: List[Callable[[List[Message]], Any]] = []
        self._last_ids: List[str] = []

    @classmethod
    def for_conversation(cls, ctx: ViewContext, conversation: Conversation, **kwargs) -> "MessageThreadView":
        student_id = conversation.counterpart.id if conversation.counterpart else None
        return cls(ctx, conversation.conversation_id, student_id=student_id, **kwargs)

    def _subscribe(self) -> None:
        self._watch(self.key, self._load)

    async def _load(self) -> List[Message]:
        body = await self.api.messages.thread(self.conversation_id, page=1, limit=self.limit)
        return [Message.model_validate(m) for m in body.get("messages", [])]

    @property
    def messages(self) -> List[Message]:
        unique: Dict[str, Message] = {}
        for message in self._data(self.key) or []:
            unique[message.id] = message
        return sorted(unique.values(), key=lambda m: (_sort_time(m.created_at), m.id))

    @property
    def is_loading(self) -> bool:
        entry = self.entry(self.key)
        return bool(entry and entry.is_loading)

    def on_messages_changed(self, callback: Callable[[List[Message]], Any]) -> Callable[[], None]:
        """``callback(messages)`` whenever the visible message set changes (scroll-to-bottom)"""
        self._message_listeners.append(callback)

        def remove() -> None:
            if callback in self._message_listeners:
                self._message_listeners.remove(callback)

        return remove

    def _on_entry_change(self, entry: CacheEntry) -> None:
        messages = self.messages
        ids = [m.id for m in messages]
        if ids != self._last_ids:
            self._last_ids = ids
            for callback in list(self._message_listeners):
                try:
                    callback(messages)
                except Exception as e:
                    logger.log_error_with_context(e, context="messages listener")
        super()._on_entry_change(entry)

    async def send(self, content: Optional[str] = None) -> Any:
        """
        Send ``content`` (default: the draft). The draft is cleared at once and
        restored if the send fails. The message appears after the refetch.
        """
        text = (self.draft if content is None else content).strip()
        if not text:
            return None

        previous_draft = self.draft
        self.draft = ""
        self._changed()

        if not self.student_id:
            self.draft = previous_draft
            raise MutationError(ValueError("Conversation has no recipient"), "send message")

        try:
            return await self._mutate(
                "send message",
                lambda: self.api.messages.send(self.student_id, text),
                invalidate=[self.key, CONVERSATIONS],
            )
        except MutationError:
            self.draft = previous_draft
            self._changed()
            raise

    async def mark_as_read(self, message_id: str) -> Any:
        return await self._mutate(
            "mark message read",
            lambda: self.api.messages.mark_as_read(message_id),
            invalidate=[self.key, CONVERSATIONS, MESSAGE_STATS],
        )

    async def delete(self, message_id: str) -> Any:
        return await self._mutate(
            "delete message",
            lambda: self.api.messages.delete(message_id),
            invalidate=[self.key, CONVERSATIONS],
        )

    async def typing(self, user_name: str) -> None:
        channel = self.ctx.channel
        if channel is not None and channel.user_id:
            await channel.send_typing(self.conversation_id, channel.user_id, user_name)

    async def stop_typing(self) -> None:
        channel = self.ctx.channel
        if channel is not None and channel.user_id:
            await channel.stop_typing(self.conversation_id, channel.user_id)


class ConversationListView(LiveView):
    """
    Conversation sidebar with the selected thread.

    The most recent conversation is selected automatically, once, while
    nothing is selected. Selecting joins that conversation's room.
    """

    events = (EventName.MESSAGE_RECEIVED, EventName.MESSAGE_DELIVERED)

    def __init__(self, ctx: ViewContext, events: Optional[Iterable[EventName]] = None):
        super().__init__(ctx, events)
        self.key = QueryKey.of(CONVERSATIONS)
        self.selected_id: Optional[str] = None
        self.search_text = ""
        self.thread: Optional[MessageThreadView] = None
        self._selection_task: Optional[asyncio.Task] = None
        self._selection_lock = asyncio.Lock()

    def _subscribe(self) -> None:
        self._watch(self.key, self.ctx.api.messages.conversations, profile="lists")

    @property
    def conversations(self) -> List[Conversation]:
        """De-duplicated, newest activity first"""
        return _latest_conversations(self._data(self.key) or [])

    @property
    def visible(self) -> List[Conversation]:
        """Conversations matching the search box"""
        needle = self.search_text.strip().lower()
        if not needle:
            return self.conversations
        matches = []
        for conversation in self.conversations:
            ref = conversation.counterpart
            haystack = " ".join(filter(None, [ref.display_name, ref.email])) if ref else ""
            if needle in haystack.lower():
                matches.append(conversation)
        return matches

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self.conversations)

    @property
    def selected(self) -> Optional[Conversation]:
        return self.get(self.selected_id) if self.selected_id else None

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self.conversations:
            if conversation.conversation_id == conversation_id:
                return conversation
        return None

    def search(self, text: str) -> None:
        self.search_text = text or ""
        self._changed()

    def _on_entry_change(self, entry: CacheEntry) -> None:
        if self.is_open and self.selected_id is None:
            conversations = self.conversations
            if conversations:
                self._begin_selection(conversations[0].conversation_id)
        super()._on_entry_change(entry)

    def _begin_selection(self, conversation_id: Optional[str]) -> asyncio.Task:
        previous, self.selected_id = self.selected_id, conversation_id
        self._selection_task = asyncio.get_running_loop().create_task(
            self._switch_thread(previous, conversation_id)
        )
        return self._selection_task

    async def select(self, conversation_id: Optional[str]) -> None:
        if conversation_id == self.selected_id and (conversation_id is None or self.thread is not None):
            return
        await self._begin_selection(conversation_id)
        self._changed()

    async def _switch_thread(self, previous: Optional[str], conversation_id: Optional[str]) -> None:
        # Serialized: leave/join pairs must not interleave
        async with self._selection_lock:
            channel = self.ctx.channel
            if self.thread is not None:
                await self.thread.close()
                self.thread = None
            if previous and channel is not None:
                await channel.leave_conversation(previous)
            if conversation_id is None or not self.is_open:
                return

            if channel is not None:
                await channel.join_conversation(conversation_id)
            conversation = self.get(conversation_id)
            if conversation is not None:
                self.thread = MessageThreadView.for_conversation(self.ctx, conversation, events=())
            else:
                self.thread = MessageThreadView(self.ctx, conversation_id, events=())
            await self.thread.open()

    async def wait_ready(self) -> None:
        await super().wait_ready()
        # A completed fetch may have started an auto-selection
        while self._selection_task is not None and not self._selection_task.done():
            await self._selection_task
            await super().wait_ready()

    async def close(self) -> None:
        if not self.is_open:
            return
        selected = self.selected_id
        await super().close()
        if self._selection_task is not None and not self._selection_task.done():
            await self._selection_task
        async with self._selection_lock:
            if self.thread is not None:
                await self.thread.close()
                self.thread = None
            if selected and self.ctx.channel is not None:
                await self.ctx.channel.leave_conversation(selected)
        self.selected_id = None


def _last_activity(conversation: Conversation) -> datetime:
    message = conversation.last_message
    return _sort_time(message.created_at if message else None)


def _latest_conversations(conversations: Iterable[Conversation]) -> List[Conversation]:
    """One row per conversation id, the most recent activity first"""
    latest: Dict[str, Conversation] = {}
    for conversation in conversations:
        current = latest.get(conversation.conversation_id)
        if current is None or _last_activity(conversation) > _last_activity(current):
            latest[conversation.conversation_id] = conversation
    return sorted(
        latest.values(),
        key=lambda c: (_last_activity(c), c.conversation_id),
        reverse=True,
    )


# ============================================
# Notifications
# ============================================

class NotificationView(LiveView):
    """
    Admin notifications.

    ``NotificationView(ctx, status="unread", limit=10)`` is the header bell;
    its badge is the server's unread total.
    """

    events = (EventName.NOTIFICATION_SENT,)

    def __init__(
        self,
        ctx: ViewContext,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        page: Optional[int] = None,
        type: Optional[str] = None,
        with_stats: bool = False,
        events: Optional[Iterable[EventName]] = None,
    ):
        super().__init__(ctx, events)
        self.status = status
        self.limit = limit
        self.page = page
        self.type = type
        self.with_stats = with_stats
        self.key = QueryKey.of(NOTIFICATIONS, status=status, limit=limit, page=page, type=type)
        self.stats_key = QueryKey.of(NOTIFICATION_STATS)

    def _subscribe(self) -> None:
        self._watch(self.key, self._load, profile="notifications")
        if self.with_stats:
            self._watch(self.stats_key, self.api.notifications.stats, profile="stats")

    async def _load(self) -> Dict[str, Any]:
        return await self.api.notifications.list(
            page=self.page, limit=self.limit, status=self.status, type=self.type
        )

    @property
    def page_data(self) -> Page:
        return Page.from_body(self._data(self.key), "notifications")

    @property
    def notifications(self) -> List[Notification]:
        """Newest first, one row per id"""
        unique: Dict[str, Notification] = {}
        for item in self.page_data.items:
            notification = item if isinstance(item, Notification) else Notification.model_validate(item)
            unique[notification.id] = notification
        return sorted(unique.values(), key=lambda n: (_sort_time(n.created_at), n.id), reverse=True)

    @property
    def unread_count(self) -> int:
        if self._data(self.key) is None:
            return 0
        notifications = self.notifications
        if self.status == NotificationStatus.UNREAD.value:
            return self.page_data.pagination.total or len(notifications)
        return sum(1 for n in notifications if n.status == NotificationStatus.UNREAD)

    @property
    def stats(self) -> Optional[Dict[str, Any]]:
        return self._data(self.stats_key)

    def _invalidates(self) -> List[str]:
        return [NOTIFICATIONS, NOTIFICATION_STATS]

    async def mark_as_read(self, notification_id: str) -> Any:
        return await self._mutate(
            "mark notification read",
            lambda: self.api.notifications.mark_as_read(notification_id),
            self._invalidates(),
        )

    async def mark_all_as_read(self) -> Any:
        return await self._mutate(
            "mark all notifications read",
            self.api.notifications.mark_all_as_read,
            self._invalidates(),
        )

    async def delete(self, notification_id: str) -> Any:
        return await self._mutate(
            "delete notification",
            lambda: self.api.notifications.delete(notification_id),
            self._invalidates(),
        )

    async def send(
        self,
        title: str,
        message: str,
        student_ids: Union[str, List[str], None] = None,
        **extra: Any,
    ) -> Any:
        """Send to one student, several, or everyone (``student_ids=None``)"""
        if student_ids is None:
            operation = lambda: self.api.notifications.send_all(title, message, **extra)
        elif isinstance(student_ids, str):
            operation = lambda: self.api.notifications.send(student_ids, title, message, **extra)
        else:
            operation = lambda: self.api.notifications.send_bulk(list(student_ids), title, message, **extra)
        return await self._mutate("send notification", operation, self._invalidates())


# ============================================
# Students
# ============================================

class StudentListView(LiveView):
    """
    Paginated, searchable student table.

    Changing page, search or filters switches the query key; the previous
    page stays on screen until the new one arrives.
    """

    events = (EventName.STUDENT_UPDATED,)

    def __init__(self, ctx: ViewContext, limit: Optional[int] = None, events: Optional[Iterable[EventName]] = None):
        super().__init__(ctx, events)
        self.page = 1
        self.limit = limit or ctx.config.page_size
        self.search_text = ""
        self.status_filter = "all"
        self.stats_key = QueryKey.of(STUDENT_STATS)
        self.observer = QueryObserver(self.store, keep_previous_data=True, listener=self._on_observer_change)
        self._debouncer = Debouncer(ctx.config.search_debounce, self._apply_search)

    @property
    def key(self) -> QueryKey:
        return QueryKey.of(
            STUDENTS,
            page=self.page,
            limit=self.limit,
            search=self.search_text or None,
            status=self.status_filter,
        )

    def _subscribe(self) -> None:
        self._watch(self.stats_key, self.api.students.stats, profile="stats")
        self._refresh_query()

    def _refresh_query(self) -> None:
        if not self.is_open:
            return
        key = self.key
        page, limit, search = self.page, self.limit, self.search_text or None
        status = None if self.status_filter == "all" else self.status_filter

        async def fetch_page():
            return await self.api.students.list(page=page, limit=limit, search=search, status=status)

        self.observer.set_query(key, fetch_page)
        if self.ctx.scheduler is not None:
            self.ctx.scheduler.schedule(key, profile="lists")

    def _on_observer_change(self, observer: QueryObserver) -> None:
        self._changed()

    async def close(self) -> None:
        self._debouncer.cancel()
        self.observer.close()
        await super().close()

    # ========== Derived state ==========

    @property
    def page_data(self) -> Page:
        return Page.from_body(self.observer.data, "students")

    @property
    def students(self) -> List[Dict[str, Any]]:
        return self.page_data.items

    @property
    def total(self) -> int:
        return self.page_data.pagination.total

    @property
    def total_pages(self) -> int:
        return max(self.page_data.pagination.pages, 1)

    @property
    def page_numbers(self) -> List[Union[int, str]]:
        return page_numbers(self.page, self.total_pages)

    @property
    def is_placeholder(self) -> bool:
        return self.observer.is_placeholder

    @property
    def is_fetching(self) -> bool:
        return self.observer.is_fetching

    @property
    def stats(self) -> Optional[Dict[str, Any]]:
        return self._data(self.stats_key)

    # ========== Inputs ==========

    def set_search(self, text: str) -> None:
        """Debounced; the query changes after typing pauses"""
        self._debouncer.push(text or "")

    def _apply_search(self, text: str) -> None:
        if text == self.search_text:
            return
        self.search_text = text
        self.page = 1
        self._refresh_query()

    async def flush_search(self) -> None:
        await self._debouncer.flush()

    def set_status(self, status: str) -> None:
        self.status_filter = status or "all"
        self.page = 1
        self._refresh_query()

    def set_limit(self, limit: int) -> None:
        self.limit = limit
        self.page = 1
        self._refresh_query()

    def set_page(self, page: int) -> bool:
        if page < 1 or page > self.total_pages:
            return False
        self.page = page
        self._refresh_query()
        return True

    # ========== Mutations ==========

    async def update_status(self, student_id: str, active: bool) -> Any:
        return await self._mutate(
            "update student status",
            lambda: self.api.students.update_status(student_id, active=active),
            invalidate=[STUDENTS, STUDENT_STATS, QueryKey.of(STUDENT, student_id)],
        )


class StudentDetailView(LiveView):
    """One student's profile page"""

    events = (EventName.STUDENT_UPDATED, EventName.DOCUMENT_UPDATED)

    def __init__(self, ctx: ViewContext, student_id: str, events: Optional[Iterable[EventName]] = None):
        super().__init__(ctx, events)
        self.student_id = student_id
        self.key = QueryKey.of(STUDENT, student_id)

    def _subscribe(self) -> None:
        self._watch(self.key, lambda: self.api.students.get(self.student_id))

    @property
    def student(self) -> Optional[Dict[str, Any]]:
        return self._data(self.key)

    @property
    def is_loading(self) -> bool:
        entry = self.entry(self.key)
        return bool(entry and entry.is_loading)

    @property
    def error(self) -> Optional[Exception]:
        entry = self.entry(self.key)
        return entry.error if entry else None

    def _invalidates(self, *extra: str) -> List[KeyLike]:
        return [self.key, STUDENTS, *extra]

    async def update(self, data: Dict[str, Any]) -> Any:
        return await self._mutate(
            "update student",
            lambda: self.api.students.update(self.student_id, data),
            self._invalidates(),
        )

    async def update_status(self, active: bool) -> Any:
        return await self._mutate(
            "update student status",
            lambda: self.api.students.update_status(self.student_id, active=active),
            self._invalidates(STUDENT_STATS),
        )

    async def send_message(self, content: str) -> Any:
        text = (content or "").strip()
        if not text:
            return None
        return await self._mutate(
            "send message",
            lambda: self.api.messages.send(self.student_id, text),
            self._invalidates(CONVERSATIONS),
        )

    async def send_notification(self, title: str, message: str, **extra: Any) -> Any:
        return await self._mutate(
            "send notification",
            lambda: self.api.notifications.send(self.student_id, title, message, **extra),
            self._invalidates(NOTIFICATIONS, NOTIFICATION_STATS),
        )


# ============================================
# Overview
# ============================================

class OverviewView(LiveView):
    """Dashboard home: statistics, today's appointments, recent conversations"""

    events = (
        EventName.STUDENT_UPDATED,
        EventName.MESSAGE_RECEIVED,
        EventName.APPOINTMENT_UPDATED,
        EventName.NOTIFICATION_SENT,
    )

    def _subscribe(self) -> None:
        api = self.api
        self._watch(STUDENT_STATS, api.students.stats, profile="stats")
        self._watch(MESSAGE_STATS, api.messages.stats, profile="stats")
        self._watch(APPOINTMENT_STATS, api.appointments.stats, profile="stats")
        self._watch(TODAY_APPOINTMENTS, api.appointments.today, profile="today")
        self._watch(CONVERSATIONS, api.messages.conversations, profile="lists")

    @property
    def student_stats(self) -> Dict[str, Any]:
        return self._data(STUDENT_STATS) or {}

    @property
    def message_stats(self) -> Dict[str, Any]:
        return self._data(MESSAGE_STATS) or {}

    @property
    def appointment_stats(self) -> Dict[str, Any]:
        return self._data(APPOINTMENT_STATS) or {}

    @property
    def today_appointments(self) -> List[Dict[str, Any]]:
        body = self._data(TODAY_APPOINTMENTS) or {}
        if isinstance(body, list):
            return body
        return body.get("appointments", [])

    @property
    def unread_messages(self) -> int:
        return int(self.message_stats.get("totalUnread", 0) or 0)

    def recent_conversations(self, limit: int = 5) -> List[Conversation]:
        return _latest_conversations(self._data(CONVERSATIONS) or [])[:limit]

    @property
    def errors(self) -> Dict[str, str]:
        """Per-query fetch errors, for inline badges"""
        errors = {}
        for kind in (STUDENT_STATS, MESSAGE_STATS, APPOINTMENT_STATS, TODAY_APPOINTMENTS, CONVERSATIONS):
            entry = self.entry(kind)
            if entry is not None and entry.error is not None:
                errors[kind] = str(entry.error)
        return errors
