"""Per-shard record dispatch with bounded retry and poison-record skipping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Callable, Iterable

from frequent_visitor.event_bus import StreamRecord

from .classification import classify_payload
from .contracts import VisitEventParseError, VisitKind
from .emission import TagEventEmitter
from .observability import AgentRunMetrics
from .profiles import ProfileStore
from .retry import RetryPolicy

logger = logging.getLogger("frequent_visitor.visitor_agent.dispatcher")


class RecordState(str, Enum):
    """Terminal states of one record; retrying happens inside ``dispatch``."""

    SUCCESS = "SUCCESS"
    DROPPED = "DROPPED"
    EXHAUSTED = "EXHAUSTED"


class RecordOutcome(str, Enum):
    VISIT = "VISIT"
    TAGGED = "TAGGED"
    IGNORED = "IGNORED"
    OTHER = "OTHER"


@dataclass(frozen=True)
class RecordResult:
    sequence_number: str
    state: RecordState
    attempts: int
    outcome: RecordOutcome | None = None


@dataclass(frozen=True)
class BatchSummary:
    records: int
    succeeded: int
    dropped: int
    skipped: int
    tags_published: int
    last_sequence_number: str | None


class RecordDispatcher:
    def __init__(
        self,
        *,
        store: ProfileStore,
        emitter: TagEventEmitter,
        retry: RetryPolicy | None = None,
        metrics: AgentRunMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
        shard_id: str = "",
    ) -> None:
        self.store = store
        self.emitter = emitter
        self.retry = retry or RetryPolicy()
        self.metrics = metrics
        self.clock = clock
        self.shard_id = shard_id

    def dispatch_batch(self, records: Iterable[StreamRecord]) -> BatchSummary:
        results = [self.dispatch(record) for record in records]
        return BatchSummary(
            records=len(results),
            succeeded=sum(1 for item in results if item.state is RecordState.SUCCESS),
            dropped=sum(1 for item in results if item.state is RecordState.DROPPED),
            skipped=sum(1 for item in results if item.state is RecordState.EXHAUSTED),
            tags_published=sum(1 for item in results if item.outcome is RecordOutcome.TAGGED),
            last_sequence_number=results[-1].sequence_number if results else None,
        )

    def dispatch(self, record: StreamRecord) -> RecordResult:
        self._count("records_seen")
        attempts = 0
        while attempts < self.retry.max_attempts:
            if attempts:
                self._count("retries")
                self.retry.backoff()
            attempts += 1
            try:
                outcome = self.process_record(record)
            except VisitEventParseError as exc:
                logger.error(
                    "Dropping unparseable record shard=%s seq=%s partition_key=%s detail=%s",
                    self.shard_id,
                    record.sequence_number,
                    record.partition_key,
                    exc,
                )
                self._count("parse_failures")
                return RecordResult(record.sequence_number, RecordState.DROPPED, attempts)
            except Exception:
                logger.warning(
                    "Caught exception while processing record shard=%s seq=%s attempt=%s/%s",
                    self.shard_id,
                    record.sequence_number,
                    attempts,
                    self.retry.max_attempts,
                    exc_info=True,
                )
                continue
            return RecordResult(record.sequence_number, RecordState.SUCCESS, attempts, outcome)

        logger.error(
            "Couldn't process record shard=%s seq=%s partition_key=%s after %s attempts. Skipping the record.",
            self.shard_id,
            record.sequence_number,
            record.partition_key,
            attempts,
        )
        self._count("records_skipped")
        return RecordResult(record.sequence_number, RecordState.EXHAUSTED, attempts)

    def process_record(self, record: StreamRecord) -> RecordOutcome:
        """One unit of work: classify, resolve, score and (maybe) emit."""
        logger.info(
            "%s, %s, %s",
            record.sequence_number,
            record.partition_key,
            record.data.decode("utf-8", errors="replace"),
        )
        event = classify_payload(record.data)
        if event is None:
            self._count("ignored")
            return RecordOutcome.IGNORED
        if event.kind is VisitKind.OTHER:
            self._count("other_events")
            return RecordOutcome.OTHER
        if event.session_id is None and event.user_id is None:
            logger.warning(
                "Ignoring %s without userSessionId or userId shard=%s seq=%s",
                event.event_name,
                self.shard_id,
                record.sequence_number,
            )
            self._count("ignored")
            return RecordOutcome.IGNORED

        logger.info("Processing eventName %s", event.event_name)
        now = self.clock() if self.clock is not None else None
        resolved = self.store.resolve(event.session_id, event.user_id, now=now)
        self._count("visits")
        if not resolved.outcome.is_frequent_visitor:
            return RecordOutcome.VISIT
        if event.session_id is None:
            logger.warning(
                "Frequent visitor %s has no userSessionId, no tag published shard=%s seq=%s",
                event.user_id,
                self.shard_id,
                record.sequence_number,
            )
            return RecordOutcome.VISIT

        logger.info("Spotted frequent visitor: %s, %s", event.user_id, event.session_id)
        self.emitter.emit(event.session_id, event.user_id)
        self._count("tags_published")
        return RecordOutcome.TAGGED

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.incr(name)
