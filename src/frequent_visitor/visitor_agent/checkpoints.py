"""Shard checkpointing: commit cadence, outcome handling and sqlite storage."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
from pathlib import Path
import sqlite3
import threading
import time
from typing import Callable, Protocol

from .observability import AgentRunMetrics
from .retry import RetryPolicy

logger = logging.getLogger("frequent_visitor.visitor_agent.checkpoints")

CHECKPOINT_INTERVAL_SECONDS = 60.0


class CommitResult(str, Enum):
    SUCCESS = "SUCCESS"
    SHUTDOWN = "SHUTDOWN"
    THROTTLED = "THROTTLED"
    STORAGE_ERROR = "STORAGE_ERROR"


class CycleStatus(str, Enum):
    COMMITTED = "COMMITTED"
    SHUTDOWN = "SHUTDOWN"
    EXHAUSTED = "EXHAUSTED"
    STORAGE_ERROR = "STORAGE_ERROR"


class ShutdownReason(str, Enum):
    TERMINATE = "TERMINATE"
    ZOMBIE = "ZOMBIE"


class CheckpointStoreError(RuntimeError):
    """Raised when the checkpoint store cannot be opened."""


class ShardCheckpointer(Protocol):
    def checkpoint(self) -> CommitResult:
        ...


@dataclass(frozen=True)
class CheckpointCycle:
    status: CycleStatus
    attempts: int


class CheckpointManager:
    """Commits shard progress at most once per interval.

    ``next_deadline`` moves forward after every cycle whatever its outcome, so a
    failing store costs one bounded retry cycle per interval and no more.
    """

    def __init__(
        self,
        *,
        shard_id: str,
        retry: RetryPolicy | None = None,
        interval_seconds: float = CHECKPOINT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: AgentRunMetrics | None = None,
    ) -> None:
        self.shard_id = shard_id
        self.retry = retry or RetryPolicy()
        self.interval_seconds = float(interval_seconds)
        self.clock = clock
        self.metrics = metrics
        self.next_deadline = 0.0

    def maybe_checkpoint(self, checkpointer: ShardCheckpointer) -> CheckpointCycle | None:
        if self.clock() <= self.next_deadline:
            return None
        return self._cycle(checkpointer)

    def force_checkpoint(self, checkpointer: ShardCheckpointer) -> CheckpointCycle:
        return self._cycle(checkpointer)

    def _cycle(self, checkpointer: ShardCheckpointer) -> CheckpointCycle:
        logger.info("Checkpointing shard %s", self.shard_id)
        try:
            return self._attempt(checkpointer)
        finally:
            self.next_deadline = self.clock() + self.interval_seconds

    def _attempt(self, checkpointer: ShardCheckpointer) -> CheckpointCycle:
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                result = checkpointer.checkpoint()
            except Exception:
                logger.exception("Unexpected checkpoint failure shard=%s", self.shard_id)
                result = CommitResult.STORAGE_ERROR

            if result is CommitResult.SUCCESS:
                self._count("checkpoint_success")
                return CheckpointCycle(CycleStatus.COMMITTED, attempt)
            if result is CommitResult.SHUTDOWN:
                logger.info("Shard %s no longer owned, skipping checkpoint", self.shard_id)
                self._count("checkpoint_shutdown")
                return CheckpointCycle(CycleStatus.SHUTDOWN, attempt)
            if result is CommitResult.STORAGE_ERROR:
                logger.error("Cannot save checkpoint for shard %s to the checkpoint store", self.shard_id)
                self._count("checkpoint_storage_error")
                return CheckpointCycle(CycleStatus.STORAGE_ERROR, attempt)

            self._count("checkpoint_throttled")
            if attempt >= self.retry.max_attempts:
                break
            logger.info(
                "Transient issue when checkpointing shard %s - attempt %s of %s",
                self.shard_id,
                attempt,
                self.retry.max_attempts,
            )
            self.retry.backoff()

        logger.error("Checkpoint failed for shard %s after %s attempts", self.shard_id, self.retry.max_attempts)
        self._count("checkpoint_exhausted")
        return CheckpointCycle(CycleStatus.EXHAUSTED, self.retry.max_attempts)

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.incr(name)


class ShardLease:
    """Ownership flag for one shard; a revoked lease turns commits into SHUTDOWN."""

    def __init__(self, shard_id: str) -> None:
        self.shard_id = shard_id
        self._revoked = threading.Event()

    def revoke(self) -> None:
        self._revoked.set()

    @property
    def held(self) -> bool:
        return not self._revoked.is_set()


class SqliteCheckpointStore:
    def __init__(self, path: Path, stream_id: str, *, timeout_seconds: float = 5.0) -> None:
        self.path = path
        self.stream_id = stream_id
        self.timeout_seconds = timeout_seconds
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS visitor_agent_shard_checkpoints (
                        stream_id TEXT NOT NULL,
                        shard_id TEXT NOT NULL,
                        sequence_number TEXT NOT NULL,
                        updated_at_utc TEXT NOT NULL,
                        PRIMARY KEY (stream_id, shard_id)
                    )
                    """
                )
        except (OSError, sqlite3.Error) as exc:
            raise CheckpointStoreError(f"CHECKPOINT_STORE_UNAVAILABLE:{self.path}:{exc}") from exc

    def sequence_number(self, shard_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT sequence_number
                FROM visitor_agent_shard_checkpoints
                WHERE stream_id = ? AND shard_id = ?
                """,
                (self.stream_id, shard_id),
            ).fetchone()
        if row is None:
            return None
        return str(row[0])

    def commit(self, shard_id: str, sequence_number: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO visitor_agent_shard_checkpoints (
                    stream_id, shard_id, sequence_number, updated_at_utc
                ) VALUES (?, ?, ?, ?)
                ON CONFLICT(stream_id, shard_id) DO UPDATE SET
                    sequence_number = excluded.sequence_number,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (self.stream_id, shard_id, sequence_number, _utc_now()),
            )

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=self.timeout_seconds)


class SqliteShardCheckpointer:
    """Commits the last processed sequence number of one shard."""

    def __init__(self, store: SqliteCheckpointStore, lease: ShardLease) -> None:
        self.store = store
        self.lease = lease
        self._pending: str | None = None

    @property
    def shard_id(self) -> str:
        return self.lease.shard_id

    def advance(self, sequence_number: str | None) -> None:
        if sequence_number:
            self._pending = sequence_number

    def checkpoint(self) -> CommitResult:
        if not self.lease.held:
            return CommitResult.SHUTDOWN
        if self._pending is None:
            return CommitResult.SUCCESS
        try:
            self.store.commit(self.shard_id, self._pending)
        except sqlite3.OperationalError as exc:
            if _is_transient(exc):
                logger.debug("Checkpoint store busy shard=%s detail=%s", self.shard_id, exc)
                return CommitResult.THROTTLED
            logger.error("Checkpoint store failure shard=%s detail=%s", self.shard_id, exc)
            return CommitResult.STORAGE_ERROR
        except (sqlite3.Error, OSError) as exc:
            logger.error("Checkpoint store failure shard=%s detail=%s", self.shard_id, exc)
            return CommitResult.STORAGE_ERROR
        return CommitResult.SUCCESS


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
