"""
Structured identifiers for cached server queries.

A key is ``(kind, ident, filters)``:

    QueryKey.of("students", page=1, status="all")   # a page of the list
    QueryKey.of("student", "64f0c1")                # one detail record
    QueryKey.parse("messages:64f0c1")               # same as QueryKey.of("messages", "64f0c1")

A key *matches* a prefix when the kinds are equal, the prefix ident is unset or
equal, and every prefix filter is present with the same value.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple, Union

from fly8sync.exceptions import InvalidQueryKeyError


def _freeze(value: Any) -> Any:
    """Turn nested dicts/lists into hashable, order-independent tuples"""
    if isinstance(value, Mapping):
        return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, set):
        return tuple(sorted(_freeze(v) for v in value))
    return value


@dataclass(frozen=True)
class QueryKey:
    kind: str
    ident: Optional[str] = None
    filters: Tuple[Tuple[str, Any], ...] = ()

    def __post_init__(self):
        if not self.kind or not isinstance(self.kind, str) or ":" in self.kind:
            raise InvalidQueryKeyError(self.kind)

    @classmethod
    def of(cls, kind: str, ident: Optional[Any] = None, **filters: Any) -> "QueryKey":
        # None-valued filters are the same query as an absent filter
        cleaned = {k: v for k, v in filters.items() if v is not None}
        return cls(
            kind=kind,
            ident=None if ident is None else str(ident),
            filters=_freeze(cleaned),
        )

    @classmethod
    def parse(cls, value: Union[str, "QueryKey"]) -> "QueryKey":
        """Parse ``"kind"`` or ``"kind:ident"``"""
        if isinstance(value, QueryKey):
            return value
        if not isinstance(value, str) or not value:
            raise InvalidQueryKeyError(value)
        kind, sep, ident = value.partition(":")
        if sep and not ident:
            raise InvalidQueryKeyError(value)
        return cls.of(kind, ident or None)

    @property
    def params(self) -> dict:
        return {k: v for k, v in self.filters}

    def matches(self, prefix: Union[str, "QueryKey"]) -> bool:
        prefix = QueryKey.parse(prefix)
        if prefix.kind != self.kind:
            return False
        if prefix.ident is not None and prefix.ident != self.ident:
            return False
        own = dict(self.filters)
        return all(k in own and own[k] == v for k, v in prefix.filters)

    def __str__(self) -> str:
        text = self.kind if self.ident is None else f"{self.kind}:{self.ident}"
        if self.filters:
            text += "{" + ",".join(f"{k}={v}" for k, v in self.filters) + "}"
        return text


KeyLike = Union[str, QueryKey]


# Well-known kinds
STUDENTS = "students"
STUDENT_STATS = "studentStats"
STUDENT = "student"
MESSAGES = "messages"
CONVERSATIONS = "conversations"
MESSAGE_STATS = "messageStats"
APPOINTMENTS = "appointments"
APPOINTMENT_STATS = "appointmentStats"
TODAY_APPOINTMENTS = "todayAppointments"
NOTIFICATIONS = "notifications"
NOTIFICATION_STATS = "notificationStats"
FEEDBACK = "feedback"
