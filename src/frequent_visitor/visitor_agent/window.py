"""Per-identity sliding-window visit scoring."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import threading


logger = logging.getLogger("frequent_visitor.visitor_agent.window")


class IntervalUnit(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


# Fixed-width, zero-padded so lexicographic order is chronological order.
_KEY_FORMATS: dict[IntervalUnit, str] = {
    IntervalUnit.MINUTE: "%Y%m%d%H%M",
    IntervalUnit.HOUR: "%Y%m%d%H",
    IntervalUnit.DAY: "%Y%m%d",
    IntervalUnit.MONTH: "%Y%m",
}


@dataclass(frozen=True)
class FrequencyWindowPolicy:
    window_size: int = 5
    interval_unit: IntervalUnit = IntervalUnit.MINUTE
    threshold: int = 2

    def __post_init__(self) -> None:
        if self.window_size <= 0:
            raise ValueError(f"window_size must be > 0, got {self.window_size}")
        if self.threshold <= 0:
            raise ValueError(f"threshold must be > 0, got {self.threshold}")

    def interval_key(self, moment: datetime) -> str:
        return moment.strftime(_KEY_FORMATS[self.interval_unit])

    def window_start_key(self, moment: datetime) -> str:
        return self.interval_key(shift_back(moment, self.window_size, self.interval_unit))


def shift_back(moment: datetime, units: int, unit: IntervalUnit) -> datetime:
    if unit is IntervalUnit.MINUTE:
        return moment - timedelta(minutes=units)
    if unit is IntervalUnit.HOUR:
        return moment - timedelta(hours=units)
    if unit is IntervalUnit.DAY:
        return moment - timedelta(days=units)
    months = moment.year * 12 + (moment.month - 1) - units
    # month keys ignore the day, so pin it to 1 to dodge short months
    return moment.replace(year=months // 12, month=months % 12 + 1, day=1)


@dataclass(frozen=True)
class VisitOutcome:
    session_id: str | None
    user_id: str | None
    interval_key: str
    frequency_score: int
    is_frequent_visitor: bool
    newly_marked: bool
    expired_intervals: int


@dataclass
class UserProfile:
    """Visit history for one resolved identity.

    All mutation goes through ``record_visit``, which holds this profile's lock;
    the store-level lock is never held at the same time.
    """

    policy: FrequencyWindowPolicy
    primary_user_id: str | None = None
    sessions: set[str] = field(default_factory=set)
    visit_intervals: dict[str, bool] = field(default_factory=dict)
    frequency_score: int = 0
    is_frequent_visitor: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def record_visit(
        self,
        session_id: str | None,
        user_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> VisitOutcome:
        moment = now or datetime.now(tz=timezone.utc)
        with self._lock:
            if user_id is not None and self.primary_user_id is None:
                self.primary_user_id = user_id
            if self.primary_user_id is not None and session_id is not None:
                self.sessions.add(session_id)

            current_key = self.policy.interval_key(moment)
            start_key = self.policy.window_start_key(moment)
            expired = self._trim(start_key)

            newly_marked = False
            if not self.visit_intervals.get(current_key, False):
                self.visit_intervals[current_key] = True
                self.frequency_score += 1
                newly_marked = True

            self.is_frequent_visitor = self.frequency_score >= self.policy.threshold
            outcome = VisitOutcome(
                session_id=session_id,
                user_id=self.primary_user_id,
                interval_key=current_key,
                frequency_score=self.frequency_score,
                is_frequent_visitor=self.is_frequent_visitor,
                newly_marked=newly_marked,
                expired_intervals=expired,
            )
        logger.info(
            "recordUserVisit session=%s user=%s interval=%s frequency_score=%s",
            session_id,
            outcome.user_id,
            current_key,
            outcome.frequency_score,
        )
        if outcome.is_frequent_visitor:
            logger.warning("%s, %s is a frequent visitor!", session_id, outcome.user_id)
        return outcome

    def _trim(self, start_key: str) -> int:
        expired = [key for key in self.visit_intervals if key < start_key]
        for key in expired:
            if self.visit_intervals.pop(key):
                self.frequency_score -= 1
            logger.debug("Expired interval %s (window start %s); score=%s", key, start_key, self.frequency_score)
        return len(expired)
