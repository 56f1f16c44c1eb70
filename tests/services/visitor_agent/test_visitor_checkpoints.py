from __future__ import annotations

from pathlib import Path
import sqlite3

import pytest

from frequent_visitor.visitor_agent.checkpoints import (
    CheckpointManager,
    CheckpointStoreError,
    CommitResult,
    CycleStatus,
    ShardLease,
    SqliteCheckpointStore,
    SqliteShardCheckpointer,
)
from frequent_visitor.visitor_agent.observability import AgentRunMetrics
from frequent_visitor.visitor_agent.retry import RetryPolicy


class _ScriptedCheckpointer:
    def __init__(self, *results: CommitResult) -> None:
        self.results = list(results)
        self.calls = 0

    def checkpoint(self) -> CommitResult:
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class _RaisingCheckpointer:
    def checkpoint(self) -> CommitResult:
        raise OSError("disk gone")


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _manager(clock: _Clock, sleeps: list[float]) -> tuple[CheckpointManager, AgentRunMetrics]:
    metrics = AgentRunMetrics(agent_name="FrequentVisitorIdentificationAgent")
    manager = CheckpointManager(
        shard_id="shardId-000000000000",
        retry=RetryPolicy(max_attempts=10, backoff_seconds=3.0, sleep=sleeps.append),
        interval_seconds=60.0,
        clock=clock,
        metrics=metrics,
    )
    return manager, metrics


def test_commit_runs_once_per_interval() -> None:
    clock = _Clock(1000.0)
    manager, metrics = _manager(clock, [])
    checkpointer = _ScriptedCheckpointer(CommitResult.SUCCESS)

    cycle = manager.maybe_checkpoint(checkpointer)
    assert cycle is not None
    assert cycle.status is CycleStatus.COMMITTED
    assert manager.next_deadline == 1060.0

    clock.now = 1030.0
    assert manager.maybe_checkpoint(checkpointer) is None
    clock.now = 1060.0
    assert manager.maybe_checkpoint(checkpointer) is None
    clock.now = 1061.0
    assert manager.maybe_checkpoint(checkpointer) is not None
    assert checkpointer.calls == 2
    assert metrics.get("checkpoint_success") == 2


def test_throttled_commit_retries_then_succeeds() -> None:
    sleeps: list[float] = []
    manager, metrics = _manager(_Clock(1000.0), sleeps)
    checkpointer = _ScriptedCheckpointer(CommitResult.THROTTLED, CommitResult.THROTTLED, CommitResult.SUCCESS)

    cycle = manager.force_checkpoint(checkpointer)

    assert cycle.status is CycleStatus.COMMITTED
    assert cycle.attempts == 3
    assert sleeps == [3.0, 3.0]
    assert metrics.get("checkpoint_throttled") == 2


def test_throttled_commit_gives_up_after_budget() -> None:
    sleeps: list[float] = []
    clock = _Clock(1000.0)
    manager, metrics = _manager(clock, sleeps)
    checkpointer = _ScriptedCheckpointer(CommitResult.THROTTLED)

    cycle = manager.maybe_checkpoint(checkpointer)

    assert cycle is not None
    assert cycle.status is CycleStatus.EXHAUSTED
    assert checkpointer.calls == 10
    assert len(sleeps) == 9
    assert metrics.get("checkpoint_exhausted") == 1
    assert manager.next_deadline == 1060.0


def test_storage_error_gives_up_immediately() -> None:
    sleeps: list[float] = []
    manager, metrics = _manager(_Clock(1000.0), sleeps)
    checkpointer = _ScriptedCheckpointer(CommitResult.STORAGE_ERROR)

    cycle = manager.force_checkpoint(checkpointer)

    assert cycle.status is CycleStatus.STORAGE_ERROR
    assert checkpointer.calls == 1
    assert sleeps == []
    assert metrics.get("checkpoint_storage_error") == 1
    assert manager.next_deadline == 1060.0


def test_unexpected_commit_failure_counts_as_storage_error() -> None:
    manager, _ = _manager(_Clock(1000.0), [])
    cycle = manager.force_checkpoint(_RaisingCheckpointer())
    assert cycle.status is CycleStatus.STORAGE_ERROR
    assert manager.next_deadline == 1060.0


def test_shutdown_result_stops_quietly() -> None:
    sleeps: list[float] = []
    manager, metrics = _manager(_Clock(1000.0), sleeps)
    checkpointer = _ScriptedCheckpointer(CommitResult.SHUTDOWN)

    cycle = manager.force_checkpoint(checkpointer)

    assert cycle.status is CycleStatus.SHUTDOWN
    assert checkpointer.calls == 1
    assert sleeps == []
    assert metrics.get("checkpoint_shutdown") == 1


def test_sqlite_store_round_trip(tmp_path: Path) -> None:
    store = SqliteCheckpointStore(tmp_path / "checkpoints.sqlite", "ema-event-stream")
    assert store.sequence_number("shardId-000000000000") is None
    store.commit("shardId-000000000000", "100")
    store.commit("shardId-000000000000", "105")
    assert store.sequence_number("shardId-000000000000") == "105"

    other_stream = SqliteCheckpointStore(tmp_path / "checkpoints.sqlite", "other-stream")
    assert other_stream.sequence_number("shardId-000000000000") is None


def test_store_open_failure_is_reported(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(CheckpointStoreError, match="CHECKPOINT_STORE_UNAVAILABLE"):
        SqliteCheckpointStore(blocker / "checkpoints.sqlite", "ema-event-stream")


def test_shard_checkpointer_commits_pending_sequence(tmp_path: Path) -> None:
    store = SqliteCheckpointStore(tmp_path / "checkpoints.sqlite", "ema-event-stream")
    checkpointer = SqliteShardCheckpointer(store, ShardLease("shardId-000000000001"))

    assert checkpointer.checkpoint() is CommitResult.SUCCESS
    assert store.sequence_number("shardId-000000000001") is None

    checkpointer.advance("42")
    checkpointer.advance(None)
    assert checkpointer.checkpoint() is CommitResult.SUCCESS
    assert store.sequence_number("shardId-000000000001") == "42"


def test_revoked_lease_yields_shutdown(tmp_path: Path) -> None:
    store = SqliteCheckpointStore(tmp_path / "checkpoints.sqlite", "ema-event-stream")
    lease = ShardLease("shardId-000000000001")
    checkpointer = SqliteShardCheckpointer(store, lease)
    checkpointer.advance("7")
    lease.revoke()
    assert lease.held is False
    assert checkpointer.checkpoint() is CommitResult.SHUTDOWN
    assert store.sequence_number("shardId-000000000001") is None


def test_locked_database_maps_to_throttled(tmp_path: Path) -> None:
    path = tmp_path / "checkpoints.sqlite"
    store = SqliteCheckpointStore(path, "ema-event-stream", timeout_seconds=0.05)
    checkpointer = SqliteShardCheckpointer(store, ShardLease("shardId-000000000001"))
    checkpointer.advance("9")

    holder = sqlite3.connect(path)
    try:
        holder.execute("BEGIN EXCLUSIVE")
        assert checkpointer.checkpoint() is CommitResult.THROTTLED
    finally:
        holder.rollback()
        holder.close()

    assert checkpointer.checkpoint() is CommitResult.SUCCESS
    assert store.sequence_number("shardId-000000000001") == "9"
