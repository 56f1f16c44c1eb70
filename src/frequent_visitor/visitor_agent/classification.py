"""Raw record payload classification."""

from __future__ import annotations

import json
import logging

from .contracts import (
    VISIT_KIND_BY_EVENT_NAME,
    VisitEvent,
    VisitEventParseError,
    VisitKind,
    optional_identifier,
)

logger = logging.getLogger("frequent_visitor.visitor_agent.classification")


def decode_document(data: bytes) -> dict:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise VisitEventParseError(f"MALFORMED_UTF8:{exc}") from exc
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise VisitEventParseError(f"INVALID_JSON:{exc.msg}") from exc
    if not isinstance(document, dict):
        raise VisitEventParseError(f"NOT_A_DOCUMENT:{type(document).__name__}")
    return document


def classify_payload(data: bytes) -> VisitEvent | None:
    """Classify one record payload.

    Returns ``None`` when the document carries no ``eventName``. Unrecognized
    event names come back as ``VisitKind.OTHER``. Decoding problems raise
    ``VisitEventParseError``; they are deterministic, so callers drop the record
    rather than retry it.
    """
    document = decode_document(data)
    raw_name = document.get("eventName")
    if raw_name is None:
        return None
    event_name = raw_name if isinstance(raw_name, str) else json.dumps(raw_name)
    kind = VISIT_KIND_BY_EVENT_NAME.get(event_name)
    if kind is None:
        logger.info("Ignoring eventName %s", event_name)
        return VisitEvent(kind=VisitKind.OTHER, event_name=event_name)
    return VisitEvent(
        kind=kind,
        event_name=event_name,
        session_id=optional_identifier(document.get("userSessionId")),
        user_id=optional_identifier(document.get("userId")),
    )
