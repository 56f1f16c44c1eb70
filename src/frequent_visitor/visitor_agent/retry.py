"""Bounded fixed-backoff retry policy."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Callable


NUM_RETRIES = 10
BACKOFF_SECONDS = 3.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = NUM_RETRIES
    backoff_seconds: float = BACKOFF_SECONDS
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_seconds < 0:
            raise ValueError(f"backoff_seconds must be >= 0, got {self.backoff_seconds}")

    def backoff(self) -> None:
        if self.backoff_seconds > 0:
            self.sleep(self.backoff_seconds)
