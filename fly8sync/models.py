"""
Wire models for server-owned entities.

The backend speaks camelCase JSON with Mongo-style ``_id`` fields; models accept
both the wire names and the Python attribute names. Unknown fields are kept.
"""

from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    APPOINTMENT = "appointment"
    MESSAGE = "message"
    SYSTEM = "system"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"
    ARCHIVED = "archived"


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class EntityRef(WireModel):
    """Reference to a student or admin embedded in another resource"""
    id: str = Field(alias="_id")
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    email: Optional[str] = None
    image: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email or self.id


class Message(WireModel):
    id: str = Field(alias="_id")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    sender: Any = None
    recipient: Any = None
    content: str = ""
    status: MessageStatus = MessageStatus.SENT
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    read_at: Optional[datetime] = Field(default=None, alias="readAt")


class Conversation(WireModel):
    conversation_id: str = Field(alias="conversationId")
    counterpart: Optional[EntityRef] = Field(default=None, alias="student")
    last_message: Optional[Message] = Field(default=None, alias="lastMessage")
    unread_count: int = Field(default=0, ge=0, alias="unreadCount")


class Notification(WireModel):
    id: str = Field(alias="_id")
    title: str = ""
    message: str = ""
    type: NotificationType = NotificationType.INFO
    priority: NotificationPriority = NotificationPriority.MEDIUM
    status: NotificationStatus = NotificationStatus.UNREAD
    link: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(alias="createdAt")


class Pagination(WireModel):
    total: int = 0
    pages: int = 1
    page: Optional[int] = None
    limit: Optional[int] = None


class Page(WireModel):
    """Paginated list body: ``{<items>: [...], pagination: {...}}``"""
    items: List[Any] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)

    @classmethod
    def from_body(cls, body: Optional[Dict[str, Any]], items_field: str) -> "Page":
        body = body or {}
        return cls(
            items=body.get(items_field) or [],
            pagination=body.get("pagination") or {},
        )
