"""
LiveDashboard - wires the sync layer together for one admin session.

    async with LiveDashboard(SyncConfig.load_default()) as dashboard:
        await dashboard.login("admin@fly8.global", "secret")
        async with dashboard.overview() as overview:
            ...

Owns the session, REST client, query store, event channel, polling scheduler
and invalidation router. When the backend rejects the credential the dashboard
logs itself out and tells its ``forced logout`` listeners.
"""

import asyncio
import weakref
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from fly8sync.api_client import ApiClient
from fly8sync.channel import EventChannelClient, SocketFactory
from fly8sync.config import SyncConfig
from fly8sync.events import EventName
from fly8sync.exceptions import Fly8SyncError, describe_error
from fly8sync.logging_config import generate_session_id, get_logger, set_session_id
from fly8sync.models import Conversation
from fly8sync.polling import PollingScheduler
from fly8sync.router import InvalidationRouter
from fly8sync.session import SessionStore
from fly8sync.store import QueryStore
from fly8sync.views import (
    ConversationListView,
    LiveView,
    MessageThreadView,
    NotificationView,
    OverviewView,
    StudentDetailView,
    StudentListView,
    ViewContext,
)

logger = get_logger("dashboard")


class LiveDashboard:
    """Composition root for the live synchronization layer"""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        session: Optional[SessionStore] = None,
        socket_factory: Optional[SocketFactory] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or SyncConfig.load_default()
        self.session = session or SessionStore(self.config.session_file)
        self.api = ApiClient(self.config, self.session, transport=transport)
        self.store = QueryStore.from_config(self.config)
        self.channel = EventChannelClient(self.config, self.session, socket_factory)
        self.scheduler = PollingScheduler(self.store, self.config)
        self.router = InvalidationRouter(self.store, self.channel)
        self.context = ViewContext(
            store=self.store,
            api=self.api,
            config=self.config,
            scheduler=self.scheduler,
            router=self.router,
            channel=self.channel,
        )

        self._views: "weakref.WeakSet[LiveView]" = weakref.WeakSet()
        self._forced_logout_listeners: List[Callable[[str], Any]] = []
        self._logout_task: Optional[asyncio.Task] = None
        self._remove_session_listener = self.session.add_unauthenticated_listener(self._on_unauthenticated)

    async def __aenter__(self) -> "LiveDashboard":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self.session.user

    def is_authenticated(self) -> bool:
        return self.session.is_authenticated()

    # ========== Session lifecycle ==========

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """Authenticate, persist the credential and open the event channel"""
        body = await self.api.auth.login(email, password)
        token = body.get("token")
        admin = body.get("admin") or body.get("user") or {}
        if not token:
            raise Fly8SyncError("Login response did not include a token", code="LOGIN_FAILED")

        self.session.save(token, admin)
        set_session_id(generate_session_id())
        logger.info(f"Logged in as {admin.get('email', 'admin')}")
        await self._connect_channel()
        return admin

    async def restore(self) -> bool:
        """Resume a persisted session; verifies it against the profile endpoint"""
        if not self.session.is_authenticated():
            return False
        try:
            profile = await self.api.auth.get_profile()
        except Fly8SyncError as e:
            logger.warning(f"Could not restore session: {describe_error(e)}")
            await self.logout()
            return False

        if profile:
            self.session.update_user(profile)
        set_session_id(generate_session_id())
        await self._connect_channel()
        return True

    async def _connect_channel(self) -> None:
        user_id = self.session.user_id
        if not user_id:
            logger.warning("Session has no user id; live updates disabled")
            return
        await self.channel.connect(user_id)

    async def logout(self) -> None:
        """End the session: views, timers, channel, cache, credential"""
        await self._close_views()
        await self.scheduler.shutdown()
        await self.channel.disconnect()
        self.store.clear()
        self.session.clear()
        set_session_id("")
        logger.info("Logged out")

    def add_forced_logout_listener(self, listener: Callable[[str], Any]) -> Callable[[], None]:
        """``listener(reason)`` after the backend ended the session"""
        self._forced_logout_listeners.append(listener)

        def remove() -> None:
            if listener in self._forced_logout_listeners:
                self._forced_logout_listeners.remove(listener)

        return remove

    def _on_unauthenticated(self, reason: str) -> None:
        if self._logout_task is not None and not self._logout_task.done():
            return
        self._logout_task = asyncio.get_running_loop().create_task(self._forced_logout(reason))

    async def _forced_logout(self, reason: str) -> None:
        logger.warning(f"Forced logout: {reason}")
        await self.logout()
        for listener in list(self._forced_logout_listeners):
            try:
                result = listener(reason)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.log_error_with_context(e, context="forced logout listener")

    async def wait_logged_out(self) -> None:
        if self._logout_task is not None:
            await self._logout_task

    # ========== View factories ==========

    def _track(self, view: LiveView) -> LiveView:
        self._views.add(view)
        return view

    def conversations(self) -> ConversationListView:
        return self._track(ConversationListView(self.context))

    def thread(self, conversation: Union[Conversation, str], student_id: Optional[str] = None) -> MessageThreadView:
        events = (EventName.MESSAGE_RECEIVED, EventName.MESSAGE_DELIVERED)
        if isinstance(conversation, Conversation):
            view = MessageThreadView.for_conversation(self.context, conversation, events=events)
        else:
            view = MessageThreadView(self.context, conversation, student_id=student_id, events=events)
        return self._track(view)

    def notifications(self, **filters: Any) -> NotificationView:
        return self._track(NotificationView(self.context, **filters))

    def header_notifications(self) -> NotificationView:
        """Unread bell: latest ten unread, badge from the server total"""
        return self.notifications(status="unread", limit=10)

    def students(self, limit: Optional[int] = None) -> StudentListView:
        return self._track(StudentListView(self.context, limit=limit))

    def student(self, student_id: str) -> StudentDetailView:
        return self._track(StudentDetailView(self.context, student_id))

    def overview(self) -> OverviewView:
        return self._track(OverviewView(self.context))

    async def _close_views(self) -> None:
        for view in list(self._views):
            try:
                await view.close()
            except Exception as e:
                logger.log_error_with_context(e, context=f"closing {type(view).__name__}")

    async def close(self) -> None:
        """Release every resource; the persisted session is kept"""
        self._remove_session_listener()
        await self._close_views()
        await self.scheduler.shutdown()
        self.scheduler.close()
        await self.channel.disconnect()
        self.store.clear()
        await self.api.close()
