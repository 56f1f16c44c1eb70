"""Visitor agent run counters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import threading
from typing import Any


_REQUIRED_COUNTERS = (
    "records_seen",
    "visits",
    "ignored",
    "other_events",
    "parse_failures",
    "retries",
    "records_skipped",
    "tags_published",
    "checkpoint_success",
    "checkpoint_shutdown",
    "checkpoint_throttled",
    "checkpoint_storage_error",
    "checkpoint_exhausted",
)


class VisitorAgentObservabilityError(ValueError):
    """Raised when an unknown counter is incremented."""


@dataclass
class AgentRunMetrics:
    agent_name: str
    counters: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in self.counters:
            raise VisitorAgentObservabilityError(f"unknown counter: {name!r}")
        with self._lock:
            self.counters[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self.counters.get(name, 0)

    def snapshot(self, *, generated_at_utc: str | None = None) -> dict[str, Any]:
        with self._lock:
            counters = dict(self.counters)
        return {
            "generated_at_utc": generated_at_utc or _utc_now(),
            "agent_name": self.agent_name,
            "metrics": counters,
        }


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
