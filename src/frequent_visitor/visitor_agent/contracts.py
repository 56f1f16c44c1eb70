"""Visitor agent event contracts: inbound visits and outbound tag events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


EVENT_SESSION_ACTIVE = "userSessionBecomesActive"
EVENT_STORE_VISIT = "userVisitsStore"
EVENT_USER_TAG = "userTag"
TAG_FREQUENT_VISITOR = "isFrequentVisitor"


class VisitKind(str, Enum):
    SESSION_ACTIVE = "SessionActive"
    STORE_VISIT = "StoreVisit"
    OTHER = "Other"


VISIT_KIND_BY_EVENT_NAME: dict[str, VisitKind] = {
    EVENT_SESSION_ACTIVE: VisitKind.SESSION_ACTIVE,
    EVENT_STORE_VISIT: VisitKind.STORE_VISIT,
}


class VisitEventParseError(ValueError):
    """Raised when a record payload cannot be decoded into a document."""


def optional_identifier(value: Any) -> str | None:
    """Normalize an identifier field: absent, null or empty string all mean None."""
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text or None


@dataclass(frozen=True)
class VisitEvent:
    kind: VisitKind
    event_name: str
    session_id: str | None = None
    user_id: str | None = None

    @property
    def is_visit(self) -> bool:
        return self.kind in (VisitKind.SESSION_ACTIVE, VisitKind.STORE_VISIT)


@dataclass(frozen=True)
class TagEvent:
    event_source: str
    session_id: str
    user_id: str | None = None
    tag: str = TAG_FREQUENT_VISITOR

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "eventName": EVENT_USER_TAG,
            "eventSource": self.event_source,
        }
        if self.user_id is not None:
            payload["userId"] = self.user_id
        payload["userSessionId"] = self.session_id
        payload["tag"] = self.tag
        return payload
