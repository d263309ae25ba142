"""
Event-to-Invalidation Router

Maps each domain event to the cache prefixes it makes stale:

    student_updated      students, studentStats, student:{studentId}
    message_received     messages:{conversationId}, conversations, messageStats
    message_delivered    messages:{conversationId}
    appointment_updated  appointmentStats, todayAppointments
    notification_sent    notifications, notificationStats
    document_updated     student:{studentId}

When the identifier for a narrow key is missing the whole prefix is
invalidated instead; an event is never dropped without a refetch.

Handlers are attached per view:

    binding = router.attach([EventName.MESSAGE_RECEIVED, EventName.MESSAGE_DELIVERED])
    ...
    binding.detach()
"""

import logging
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from fly8sync.events import (
    AppointmentUpdated,
    DocumentUpdated,
    DomainEvent,
    EventName,
    MessageDelivered,
    MessageReceived,
    NotificationSent,
    StudentUpdated,
)
from fly8sync.logging_config import get_logger
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
    QueryKey,
)

logger = get_logger("router")

EventListener = Callable[[DomainEvent, List[QueryKey]], Any]


def _narrow(kind: str, ident: Optional[str]) -> QueryKey:
    # Missing identifier: fall back to every key of that kind
    return QueryKey.of(kind, ident)


def route(event: DomainEvent) -> List[QueryKey]:
    """Prefixes to invalidate for ``event``; pure"""
    if isinstance(event, StudentUpdated):
        return [QueryKey.of(STUDENTS), QueryKey.of(STUDENT_STATS), _narrow(STUDENT, event.student_id)]
    if isinstance(event, MessageReceived):
        return [_narrow(MESSAGES, event.conversation_id), QueryKey.of(CONVERSATIONS), QueryKey.of(MESSAGE_STATS)]
    if isinstance(event, MessageDelivered):
        return [_narrow(MESSAGES, event.conversation_id)]
    if isinstance(event, AppointmentUpdated):
        return [QueryKey.of(APPOINTMENT_STATS), QueryKey.of(TODAY_APPOINTMENTS)]
    if isinstance(event, NotificationSent):
        return [QueryKey.of(NOTIFICATIONS), QueryKey.of(NOTIFICATION_STATS)]
    if isinstance(event, DocumentUpdated):
        return [_narrow(STUDENT, event.student_id)]
    return []


class RouterBinding:
    """Handlers one view attached to the channel"""

    def __init__(self, channel, handlers: List[Tuple[str, Callable]]):
        self._channel = channel
        self._handlers = handlers

    @property
    def events(self) -> List[str]:
        return [event for event, _ in self._handlers]

    @property
    def attached(self) -> bool:
        return bool(self._handlers)

    def detach(self) -> None:
        """Remove exactly the handlers this binding added"""
        handlers, self._handlers = self._handlers, []
        for event, handler in handlers:
            self._channel.unsubscribe(event, handler)


class InvalidationRouter:
    """Turns channel events into cache invalidations"""

    def __init__(self, store, channel=None):
        self.store = store
        self.channel = channel
        self._listeners: List[EventListener] = []

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        """``listener(event, keys)`` runs after the invalidation"""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def handle(self, name: Union[str, EventName], payload: Any = None) -> List[QueryKey]:
        event = DomainEvent.parse(name, payload)
        keys = route(event)
        if not keys:
            logger.debug(f"No invalidation route for {event.name}")
            return []

        logger.log_channel_event(event.name, ", ".join(str(k) for k in keys), level=logging.DEBUG)
        for key in keys:
            self.store.invalidate(key)

        for listener in list(self._listeners):
            try:
                listener(event, keys)
            except Exception as e:
                logger.log_error_with_context(e, context=f"listener for {event.name}")
        return keys

    def attach(self, events: Optional[Iterable[Union[str, EventName]]] = None) -> RouterBinding:
        """Subscribe to ``events`` (default: every routed event) on the channel"""
        if self.channel is None:
            return RouterBinding(None, [])

        names = [e.value if isinstance(e, EventName) else e for e in (events or list(EventName))]
        handlers = []
        for name in names:
            handler = self._make_handler(name)
            self.channel.subscribe(name, handler)
            handlers.append((name, handler))
        return RouterBinding(self.channel, handlers)

    def _make_handler(self, name: str) -> Callable:
        def handler(*args):
            self.handle(name, args[0] if args else None)

        return handler
