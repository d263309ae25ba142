"""
Domain events pushed by the admin backend over the event channel.

Payloads are loose JSON. ``DomainEvent.parse`` turns one into a typed record
where every field except ``name`` may be missing:

    event = DomainEvent.parse("message_received", {"conversationId": "c1"})
    isinstance(event, MessageReceived)   # True
    event.conversation_id                # "c1"
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Type


class EventName(str, Enum):
    STUDENT_UPDATED = "student_updated"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_DELIVERED = "message_delivered"
    APPOINTMENT_UPDATED = "appointment_updated"
    NOTIFICATION_SENT = "notification_sent"
    DOCUMENT_UPDATED = "document_updated"


def _pick(payload: Dict[str, Any], *names: str) -> Optional[str]:
    """First non-empty value among ``names``, stringified"""
    for name in names:
        value = payload.get(name)
        if value is None or value == "":
            continue
        if isinstance(value, dict):
            # Populated references arrive as {"_id": ...}
            value = value.get("_id") or value.get("id")
            if not value:
                continue
        return str(value)
    return None


@dataclass
class DomainEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, name: str, payload: Dict[str, Any]) -> "DomainEvent":
        return cls(name=name, payload=payload)

    @staticmethod
    def parse(name: str, payload: Any = None) -> "DomainEvent":
        if isinstance(name, EventName):
            name = name.value
        if not isinstance(payload, dict):
            payload = {}
        event_cls = _EVENT_TYPES.get(name, UnknownEvent)
        return event_cls.from_payload(name, payload)


@dataclass
class StudentUpdated(DomainEvent):
    student_id: Optional[str] = None

    @classmethod
    def from_payload(cls, name, payload):
        return cls(name=name, payload=payload,
                   student_id=_pick(payload, "studentId", "student_id", "student", "_id", "id"))


@dataclass
class MessageReceived(DomainEvent):
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    sender_id: Optional[str] = None
    content: Optional[str] = None

    @classmethod
    def from_payload(cls, name, payload):
        message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
        return cls(
            name=name,
            payload=payload,
            conversation_id=(_pick(payload, "conversationId", "conversation_id")
                             or _pick(message, "conversationId", "conversation_id")),
            message_id=_pick(payload, "messageId", "message_id") or _pick(message, "_id", "id"),
            sender_id=_pick(payload, "senderId", "sender_id", "sender") or _pick(message, "sender"),
            content=payload.get("content") or message.get("content"),
        )


@dataclass
class MessageDelivered(DomainEvent):
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def from_payload(cls, name, payload):
        return cls(
            name=name,
            payload=payload,
            conversation_id=_pick(payload, "conversationId", "conversation_id"),
            message_id=_pick(payload, "messageId", "message_id"),
        )


@dataclass
class AppointmentUpdated(DomainEvent):
    appointment_id: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_payload(cls, name, payload):
        return cls(
            name=name,
            payload=payload,
            appointment_id=_pick(payload, "appointmentId", "appointment_id", "_id", "id"),
            status=_pick(payload, "status"),
        )


@dataclass
class NotificationSent(DomainEvent):
    notification_id: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def from_payload(cls, name, payload):
        return cls(
            name=name,
            payload=payload,
            notification_id=_pick(payload, "notificationId", "notification_id", "_id", "id"),
            title=payload.get("title"),
        )


@dataclass
class DocumentUpdated(DomainEvent):
    student_id: Optional[str] = None
    document_id: Optional[str] = None

    @classmethod
    def from_payload(cls, name, payload):
        return cls(
            name=name,
            payload=payload,
            student_id=_pick(payload, "studentId", "student_id", "student"),
            document_id=_pick(payload, "documentId", "document_id"),
        )


@dataclass
class UnknownEvent(DomainEvent):
    pass


_EVENT_TYPES: Dict[str, Type[DomainEvent]] = {
    EventName.STUDENT_UPDATED.value: StudentUpdated,
    EventName.MESSAGE_RECEIVED.value: MessageReceived,
    EventName.MESSAGE_DELIVERED.value: MessageDelivered,
    EventName.APPOINTMENT_UPDATED.value: AppointmentUpdated,
    EventName.NOTIFICATION_SENT.value: NotificationSent,
    EventName.DOCUMENT_UPDATED.value: DocumentUpdated,
}
