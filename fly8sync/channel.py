"""
Event Channel Client - one authenticated socket.io connection per admin session

Features:
1. Idempotent connect, authenticated with the persisted bearer token
2. ``join(userId)`` on every (re)connect, then replay of conversation rooms
3. Ordered multi-handler registry per event name
4. Bounded retry with exponential backoff, websocket first then polling
5. Errors are logged, never raised: views degrade to polling-only staleness
"""

import asyncio
import logging
from enum import Enum
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import socketio

from fly8sync.config import SyncConfig
from fly8sync.exceptions import ChannelError
from fly8sync.logging_config import get_logger, set_user_id
from fly8sync.session import SessionStore

logger = get_logger("channel")

EventHandler = Callable[..., Any]
SocketFactory = Callable[..., Any]


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def default_socket_factory(config: SyncConfig) -> socketio.AsyncClient:
    return socketio.AsyncClient(
        reconnection=True,
        reconnection_attempts=config.reconnection_attempts,
        reconnection_delay=config.reconnection_delay,
        reconnection_delay_max=config.reconnection_delay_max,
        logger=False,
        engineio_logger=False,
    )


class EventChannelClient:
    """
    Bidirectional event channel to the admin backend.

    Usage:
        channel = EventChannelClient(config, session)
        await channel.connect(admin_id)
        channel.subscribe("message_received", on_message)
        await channel.join_conversation(conversation_id)
    """

    def __init__(
        self,
        config: SyncConfig,
        session: SessionStore,
        socket_factory: Optional[SocketFactory] = None,
    ):
        self.config = config
        self.session = session
        self._socket_factory = socket_factory or default_socket_factory
        self._socket = None
        self._user_id: Optional[str] = None
        self._rooms: List[str] = []
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._bound_events: set = set()
        self._connect_task: Optional[asyncio.Task] = None
        self.status = ConnectionStatus.DISCONNECTED
        self.retry_count = 0
        self.last_error: Optional[ChannelError] = None

    # ========== Connection lifecycle ==========

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def rooms(self) -> List[str]:
        return list(self._rooms)

    def is_connected(self) -> bool:
        return bool(self._socket is not None and self._socket.connected)

    def _get_backoff_delay(self) -> float:
        """Calculate exponential backoff delay"""
        delay = self.config.reconnection_delay * (2 ** max(self.retry_count - 1, 0))
        return min(delay, self.config.reconnection_delay_max)

    def _transports_for_attempt(self, attempt: int) -> List[str]:
        # Preferred low-latency transport alone first, the full list afterwards
        transports = list(self.config.transports)
        if attempt == 0 and len(transports) > 1:
            return transports[:1]
        return transports

    async def connect(self, user_id: str) -> None:
        """Open the channel for ``user_id``; no-op when already connected"""
        if self.is_connected() or (self._connect_task and not self._connect_task.done()):
            logger.warning("Socket already connected")
            return

        if self._socket is not None:
            await self.disconnect()

        self._user_id = user_id
        set_user_id(user_id)
        self._socket = self._socket_factory(self.config)
        self._bound_events.clear()
        self._bind_socket(self._socket)
        self.retry_count = 0

        if await self._attempt_connect(0):
            return

        # Keep retrying in the background without blocking the caller
        self._connect_task = asyncio.create_task(self._retry_loop())

    async def _attempt_connect(self, attempt: int) -> bool:
        transports = self._transports_for_attempt(attempt)
        try:
            await self._socket.connect(
                self.config.socket_url,
                auth={"token": self.session.token},
                transports=transports,
                wait_timeout=self.config.request_timeout,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = ChannelError(f"{e} (transports={','.join(transports)})")
            logger.log_channel_event(
                "connect_error",
                self.last_error.message,
                level=logging.WARNING,
                attempt=attempt + 1,
            )
            return False

    async def _retry_loop(self) -> None:
        attempts = self.config.reconnection_attempts
        while self.retry_count < attempts and self._socket is not None:
            self.retry_count += 1
            self.status = ConnectionStatus.RECONNECTING
            delay = self._get_backoff_delay()
            logger.log_channel_event(
                "reconnecting",
                f"retrying in {delay:.1f}s (attempt {self.retry_count}/{attempts})",
            )
            await asyncio.sleep(delay)
            if self._socket is None:
                return
            if await self._attempt_connect(self.retry_count):
                return

        if self._socket is not None:
            self.status = ConnectionStatus.FAILED
            logger.log_channel_event(
                "failed", f"giving up after {attempts} attempts; polling only", level=logging.ERROR
            )

    async def disconnect(self) -> None:
        """Tear down the connection and forget the session identity"""
        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass
        self._connect_task = None

        socket, self._socket = self._socket, None
        self._user_id = None
        self._rooms.clear()
        self._bound_events.clear()
        set_user_id("")
        self.status = ConnectionStatus.DISCONNECTED
        self.last_error = None

        if socket is not None:
            try:
                await socket.disconnect()
            except Exception as e:
                logger.log_channel_event("disconnect_error", str(e), level=logging.WARNING)

    # ========== Socket callbacks ==========

    def _bind_socket(self, socket) -> None:
        socket.on("connect", handler=self._on_connect)
        socket.on("disconnect", handler=self._on_disconnect)
        socket.on("connect_error", handler=self._on_connect_error)
        for event in list(self._handlers):
            self._bind_event(event)

    def _bind_event(self, event: str) -> None:
        if self._socket is None or event in self._bound_events:
            return

        async def dispatcher(*args):
            await self._dispatch(event, *args)

        self._socket.on(event, handler=dispatcher)
        self._bound_events.add(event)

    async def _on_connect(self) -> None:
        self.status = ConnectionStatus.CONNECTED
        self.retry_count = 0
        self.last_error = None
        logger.log_channel_event("connected", getattr(self._socket, "sid", None))
        if self._user_id:
            await self._send("join", self._user_id, force=True)
        # Rooms are replayed only after the session has re-identified itself
        for conversation_id in list(self._rooms):
            await self._send("join-conversation", conversation_id, force=True)

    async def _on_disconnect(self, *args) -> None:
        if self._socket is None:
            return
        self.status = ConnectionStatus.RECONNECTING
        reason = args[0] if args else None
        logger.log_channel_event("disconnected", str(reason) if reason else None, level=logging.WARNING)

    async def _on_connect_error(self, *args) -> None:
        self.last_error = ChannelError(str(args[0]) if args else "connection refused")
        logger.log_channel_event("connect_error", self.last_error.message, level=logging.ERROR)

    async def _dispatch(self, event: str, *args) -> None:
        # Registration order; each handler isolated from the others
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.log_error_with_context(e, context=f"handler for {event}")

    # ========== Subscriptions ==========

    def subscribe(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)
        self._bind_event(event)
        logger.debug(f"Registered handler for {event}")

    def unsubscribe(self, event: str, handler: Optional[EventHandler] = None) -> None:
        """Remove ``handler``, or every handler for ``event`` when omitted"""
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    # ========== Outbound ==========

    async def _send(self, event: str, data: Any, force: bool = False) -> None:
        # force: inside the connect callback, before the client flags itself connected
        if self._socket is None or not (force or self.is_connected()):
            logger.debug(f"Dropped {event}: channel not connected")
            return
        try:
            await self._socket.emit(event, data)
        except Exception as e:
            logger.log_channel_event("emit_error", f"{event}: {e}", level=logging.WARNING)

    async def emit(self, event: str, payload: Any) -> None:
        """Fire-and-forget send"""
        await self._send(event, payload)

    async def join_conversation(self, conversation_id: str) -> None:
        if conversation_id not in self._rooms:
            self._rooms.append(conversation_id)
        await self._send("join-conversation", conversation_id)

    async def leave_conversation(self, conversation_id: str) -> None:
        if conversation_id in self._rooms:
            self._rooms.remove(conversation_id)
        await self._send("leave-conversation", conversation_id)

    async def send_typing(self, conversation_id: str, user_id: str, user_name: str) -> None:
        await self._send("typing", {"conversationId": conversation_id, "userId": user_id, "userName": user_name})

    async def stop_typing(self, conversation_id: str, user_id: str) -> None:
        await self._send("stop-typing", {"conversationId": conversation_id, "userId": user_id})
