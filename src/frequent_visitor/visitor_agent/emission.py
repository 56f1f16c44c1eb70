"""Frequent-visitor tag emission onto the event stream."""

from __future__ import annotations

import logging

from frequent_visitor.event_bus import EbRef, EventBusPublisher

from .contracts import TagEvent

logger = logging.getLogger("frequent_visitor.visitor_agent.emission")


class TagEventEmitter:
    """Publishes ``userTag`` events keyed by session id.

    Publish errors are not retried here; they surface to the record dispatcher,
    which retries the whole unit of work.
    """

    def __init__(self, publisher: EventBusPublisher, *, stream_name: str, agent_name: str) -> None:
        if not stream_name:
            raise ValueError("stream_name is required")
        self.publisher = publisher
        self.stream_name = stream_name
        self.agent_name = agent_name

    def emit(self, session_id: str, user_id: str | None = None) -> EbRef:
        if not session_id:
            raise ValueError("TAG_EVENT_SESSION_ID_MISSING")
        event = TagEvent(event_source=self.agent_name, session_id=session_id, user_id=user_id)
        payload = event.as_payload()
        ref = self.publisher.publish(self.stream_name, session_id, payload)
        logger.info(
            "Published userTag session=%s user=%s stream=%s offset=%s",
            session_id,
            user_id,
            ref.topic,
            ref.offset,
        )
        return ref
