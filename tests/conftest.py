"""
Fly8 Sync - Test Configuration and Fixtures
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from faker import Faker
from socketio.exceptions import ConnectionError as SocketConnectionError

from fly8sync.api_client import ApiClient
from fly8sync.channel import EventChannelClient
from fly8sync.config import SyncConfig
from fly8sync.polling import PollingScheduler
from fly8sync.router import InvalidationRouter
from fly8sync.session import SessionStore
from fly8sync.store import QueryStore
from fly8sync.views import ViewContext

fake = Faker()

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and tasks run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================
# Sample data
# ============================================

def make_student(student_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "_id": student_id or fake.uuid4(),
        "firstName": fake.first_name(),
        "lastName": fake.last_name(),
        "email": fake.email(),
    }


def make_message(conversation_id: str, minutes_ago: int = 0, **extra) -> Dict[str, Any]:
    message = {
        "_id": fake.uuid4(),
        "conversationId": conversation_id,
        "content": fake.sentence(),
        "status": "sent",
        "createdAt": (NOW - timedelta(minutes=minutes_ago)).isoformat(),
    }
    message.update(extra)
    return message


def make_conversation(conversation_id: str, minutes_ago: int = 0, unread: int = 0) -> Dict[str, Any]:
    return {
        "conversationId": conversation_id,
        "student": make_student(),
        "lastMessage": make_message(conversation_id, minutes_ago),
        "unreadCount": unread,
    }


def make_notification(status: str = "unread", minutes_ago: int = 0) -> Dict[str, Any]:
    return {
        "_id": fake.uuid4(),
        "title": fake.sentence(nb_words=3),
        "message": fake.sentence(),
        "type": "info",
        "priority": "medium",
        "status": status,
        "createdAt": (NOW - timedelta(minutes=minutes_ago)).isoformat(),
    }


# ============================================
# Fake REST backend
# ============================================

class FakeBackend:
    """Routes ``(method, path)`` to canned JSON; records every request"""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], Any]] = {}
        self.requests: List[httpx.Request] = []

    def route(self, method: str, path: str, body: Any = None, status: int = 200) -> None:
        """``body`` may be a value or a callable(request) returning one"""
        def respond(request):
            value = body(request) if callable(body) else body
            return httpx.Response(status, json=value if value is not None else {})

        self.routes[(method.upper(), path)] = respond

    def route_handler(self, method: str, path: str, handler: Callable[[httpx.Request], Any]) -> None:
        """``handler(request)`` returns an httpx.Response (sync or async)"""
        self.routes[(method.upper(), path)] = handler

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        respond = self.routes.get((request.method, request.url.path))
        if respond is None:
            return httpx.Response(404, json={"message": f"No route for {request.url.path}"})
        response = respond(request)
        if asyncio.iscoroutine(response):
            response = await response
        return response

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method.upper() and r.url.path == path)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


# ============================================
# Fake socket.io client
# ============================================

class FakeSocket:
    """
    Stands in for ``socketio.AsyncClient``. Like the real client, the
    ``connect`` handler runs before ``connected`` turns True.
    """

    def __init__(self, fail_connects: int = 0):
        self.handlers: Dict[str, Callable] = {}
        self.emitted: List[Tuple[str, Any]] = []
        self.connect_calls: List[Dict[str, Any]] = []
        self.fail_connects = fail_connects
        self.connected = False
        self.sid = fake.uuid4()

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, auth=None, transports=None, wait_timeout=None, **kwargs):
        self.connect_calls.append({"url": url, "auth": auth, "transports": transports})
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise SocketConnectionError("Connection refused")
        await self._trigger("connect")
        self.connected = True

    async def disconnect(self):
        was_connected = self.connected
        self.connected = False
        if was_connected:
            await self._trigger("disconnect")

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def _trigger(self, event, *args):
        handler = self.handlers.get(event)
        if handler is not None:
            await handler(*args)

    # ===== Server-side simulation =====

    async def server_emit(self, event, *args):
        await self._trigger(event, *args)

    async def drop(self, reason="transport close"):
        """Unexpected disconnect"""
        self.connected = False
        await self._trigger("disconnect", reason)

    async def reconnect(self):
        """What socket.io's own reconnection does after a drop"""
        await self._trigger("connect")
        self.connected = True


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def config(tmp_path) -> SyncConfig:
    return SyncConfig(
        api_base_url="http://fly8.test",
        config_dir=str(tmp_path),
        request_timeout=2.0,
        reconnection_attempts=3,
        reconnection_delay=0.01,
        reconnection_delay_max=0.04,
        search_debounce=0.01,
        gc_time=300.0,
    )


@pytest.fixture
def admin() -> Dict[str, Any]:
    return {
        "_id": fake.uuid4(),
        "firstName": fake.first_name(),
        "lastName": fake.last_name(),
        "email": fake.email(),
        "role": "admin",
    }


@pytest.fixture
def session(config, admin) -> SessionStore:
    store = SessionStore(config.session_file)
    store.save("test-token", admin)
    return store


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
async def api(config, session, backend):
    client = ApiClient(config, session, transport=backend.transport)
    yield client
    await client.close()


@pytest.fixture
def store() -> QueryStore:
    return QueryStore(request_timeout=2.0, gc_time=300.0)


@pytest.fixture
def sockets() -> List[FakeSocket]:
    """Every socket the channel created, newest last"""
    return []


@pytest.fixture
def socket_factory(sockets):
    def factory(config):
        socket = FakeSocket()
        sockets.append(socket)
        return socket

    return factory


@pytest.fixture
async def channel(config, session, socket_factory):
    client = EventChannelClient(config, session, socket_factory=socket_factory)
    yield client
    await client.disconnect()


@pytest.fixture
async def ctx(config, store, api, channel):
    scheduler = PollingScheduler(store, config)
    context = ViewContext(
        store=store,
        api=api,
        config=config,
        scheduler=scheduler,
        router=InvalidationRouter(store, channel),
        channel=channel,
    )
    yield context
    await scheduler.shutdown()
    store.clear()
