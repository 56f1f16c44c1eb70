"""Visitor agent runtime: shard polling loops, record processors and CLI."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
import logging
from pathlib import Path
import signal
import threading
import time
from typing import Any, Callable

from frequent_visitor.event_bus import EventBusPublisher, EventBusReader, FileEventBusPublisher, ShardRead, StreamRecord
from frequent_visitor.event_bus.kinesis import KinesisEventBusReader, build_kinesis_publisher
from frequent_visitor.logging_utils import configure_logging

from .checkpoints import (
    CheckpointCycle,
    CheckpointManager,
    ShardLease,
    ShutdownReason,
    SqliteCheckpointStore,
    SqliteShardCheckpointer,
)
from .config import AGENT_NAME, VisitorAgentPolicy, VisitorAgentProfile
from .dispatcher import BatchSummary, RecordDispatcher
from .emission import TagEventEmitter
from .observability import AgentRunMetrics
from .profiles import ProfileStore
from .retry import RetryPolicy

logger = logging.getLogger("frequent_visitor.visitor_agent.worker")


class ShardRecordProcessor:
    """Drives one shard: dispatch each batch, then commit progress on cadence."""

    def __init__(
        self,
        *,
        store: ProfileStore,
        emitter: TagEventEmitter,
        policy: VisitorAgentPolicy,
        metrics: AgentRunMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.emitter = emitter
        self.policy = policy
        self.metrics = metrics
        self.clock = clock
        self.monotonic = monotonic
        self.sleep = sleep
        self.shard_id: str | None = None
        self.dispatcher: RecordDispatcher | None = None
        self.checkpoints: CheckpointManager | None = None

    def initialize(self, shard_id: str) -> None:
        logger.info("Initializing record processor for shard: %s", shard_id)
        retry = RetryPolicy(
            max_attempts=self.policy.retry_attempts,
            backoff_seconds=self.policy.backoff_seconds,
            sleep=self.sleep,
        )
        self.shard_id = shard_id
        self.dispatcher = RecordDispatcher(
            store=self.store,
            emitter=self.emitter,
            retry=retry,
            metrics=self.metrics,
            clock=self.clock,
            shard_id=shard_id,
        )
        self.checkpoints = CheckpointManager(
            shard_id=shard_id,
            retry=retry,
            interval_seconds=self.policy.checkpoint_interval_seconds,
            clock=self.monotonic,
            metrics=self.metrics,
        )

    def process_records(self, records: list[StreamRecord], checkpointer: SqliteShardCheckpointer) -> BatchSummary:
        if self.dispatcher is None or self.checkpoints is None:
            raise RuntimeError("RECORD_PROCESSOR_NOT_INITIALIZED")
        logger.info("Processing %s records from shard %s", len(records), self.shard_id)
        summary = self.dispatcher.dispatch_batch(records)
        checkpointer.advance(summary.last_sequence_number)
        self.checkpoints.maybe_checkpoint(checkpointer)
        return summary

    def shutdown(self, checkpointer: SqliteShardCheckpointer, reason: ShutdownReason) -> CheckpointCycle | None:
        if self.checkpoints is None:
            raise RuntimeError("RECORD_PROCESSOR_NOT_INITIALIZED")
        logger.info("Shutting down record processor for shard: %s reason=%s", self.shard_id, reason.value)
        if reason is ShutdownReason.TERMINATE:
            return self.checkpoints.force_checkpoint(checkpointer)
        return None


@dataclass
class _ShardState:
    shard_id: str
    partition: int
    processor: ShardRecordProcessor
    lease: ShardLease
    checkpointer: SqliteShardCheckpointer
    position: str | None
    closed: bool = False


class VisitorAgentWorker:
    def __init__(
        self,
        profile: VisitorAgentProfile,
        *,
        store: ProfileStore | None = None,
        publisher: EventBusPublisher | None = None,
        file_reader: EventBusReader | None = None,
        kinesis_reader: KinesisEventBusReader | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.profile = profile
        wiring = profile.wiring
        self.store = store or ProfileStore(profile.policy.window)
        self.metrics = AgentRunMetrics(agent_name=profile.policy.agent_name)
        self.checkpoint_store = SqliteCheckpointStore(wiring.checkpoint_path, wiring.stream_name)
        self.clock = clock
        self.monotonic = monotonic
        self.sleep = sleep
        self._file_reader = file_reader
        self._kinesis_reader = kinesis_reader
        if wiring.event_bus_kind == "file" and self._file_reader is None:
            self._file_reader = EventBusReader(Path(wiring.event_bus_root))
        if wiring.event_bus_kind == "kinesis" and self._kinesis_reader is None:
            self._kinesis_reader = KinesisEventBusReader(
                stream_name=wiring.stream_name,
                region=wiring.region,
                endpoint_url=wiring.endpoint_url,
            )
        if publisher is None:
            if wiring.event_bus_kind == "file":
                publisher = FileEventBusPublisher(Path(wiring.event_bus_root))
            else:
                publisher = build_kinesis_publisher(
                    stream_name=wiring.stream_name,
                    region=wiring.region,
                    endpoint_url=wiring.endpoint_url,
                )
        self.emitter = TagEventEmitter(
            publisher,
            stream_name=wiring.stream_name,
            agent_name=profile.policy.agent_name,
        )
        self._shards: dict[str, _ShardState] = {}
        self._shards_lock = threading.Lock()
        self._stop = threading.Event()
        self._closed = False

    def discover_shards(self) -> list[str]:
        wiring = self.profile.wiring
        if self._file_reader is not None:
            found = [(f"partition-{part}", part) for part in self._file_reader.list_partitions(wiring.stream_name)]
        else:
            assert self._kinesis_reader is not None
            found = [(shard_id, 0) for shard_id in self._kinesis_reader.list_shards(wiring.stream_name)]
        with self._shards_lock:
            for shard_id, partition in found:
                if shard_id not in self._shards:
                    self._shards[shard_id] = self._open_shard(shard_id, partition)
            return [shard_id for shard_id, state in self._shards.items() if not state.closed]

    def run_once(self) -> int:
        processed = 0
        for shard_id in self.discover_shards():
            processed += self.poll_shard(self._shards[shard_id])
        return processed

    def run_forever(self) -> None:
        threads: dict[str, threading.Thread] = {}
        try:
            while not self._stop.is_set():
                for shard_id in self.discover_shards():
                    if shard_id in threads:
                        continue
                    thread = threading.Thread(
                        target=self._shard_loop,
                        args=(self._shards[shard_id],),
                        name=f"visitor-agent-{shard_id}",
                        daemon=True,
                    )
                    threads[shard_id] = thread
                    thread.start()
                self._stop.wait(self.profile.wiring.poll_sleep_seconds)
        finally:
            self._stop.set()
            for thread in threads.values():
                thread.join()
            self.close()

    def stop(self) -> None:
        """Request a graceful stop; shards still open lose their lease."""
        self._stop.set()
        with self._shards_lock:
            for state in self._shards.values():
                if not state.closed:
                    state.lease.revoke()

    def close(self) -> dict[str, Any]:
        if not self._closed:
            self._closed = True
            with self._shards_lock:
                states = list(self._shards.values())
            for state in states:
                if state.closed:
                    continue
                state.lease.revoke()
                state.processor.shutdown(state.checkpointer, ShutdownReason.ZOMBIE)
                state.closed = True
        snapshot = self.metrics.snapshot()
        logger.info("Visitor agent metrics %s", snapshot)
        return snapshot

    def poll_shard(self, state: _ShardState) -> int:
        if state.closed:
            return 0
        batch = self._read(state)
        if batch.records:
            state.processor.process_records(batch.records, state.checkpointer)
            state.position = batch.records[-1].sequence_number
        if batch.shard_end:
            logger.info("Reached end of shard %s", state.shard_id)
            state.processor.shutdown(state.checkpointer, ShutdownReason.TERMINATE)
            state.closed = True
        return len(batch.records)

    def _shard_loop(self, state: _ShardState) -> None:
        while not self._stop.is_set() and not state.closed:
            if self.poll_shard(state) == 0:
                self._stop.wait(self.profile.wiring.poll_sleep_seconds)

    def _read(self, state: _ShardState) -> ShardRead:
        wiring = self.profile.wiring
        if self._file_reader is not None:
            from_offset = int(state.position) + 1 if state.position is not None else 0
            return self._file_reader.read_shard(
                wiring.stream_name,
                partition=state.partition,
                from_offset=from_offset,
                max_records=wiring.poll_max_records,
            )
        assert self._kinesis_reader is not None
        return self._kinesis_reader.read(
            stream_name=wiring.stream_name,
            shard_id=state.shard_id,
            from_sequence=state.position,
            limit=wiring.poll_max_records,
            start_position=wiring.start_position,
        )

    def _open_shard(self, shard_id: str, partition: int) -> _ShardState:
        processor = ShardRecordProcessor(
            store=self.store,
            emitter=self.emitter,
            policy=self.profile.policy,
            metrics=self.metrics,
            clock=self.clock,
            monotonic=self.monotonic,
            sleep=self.sleep,
        )
        processor.initialize(shard_id)
        lease = ShardLease(shard_id)
        position = self.checkpoint_store.sequence_number(shard_id)
        if position is not None:
            logger.info("Resuming shard %s after sequence %s", shard_id, position)
        return _ShardState(
            shard_id=shard_id,
            partition=partition,
            processor=processor,
            lease=lease,
            checkpointer=SqliteShardCheckpointer(self.checkpoint_store, lease),
            position=position,
        )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Frequent visitor identification agent")
    parser.add_argument("--name", action="store_true", help="Print the agent name and exit")
    parser.add_argument("--profile", help="Path to visitor agent profile YAML")
    parser.add_argument("--once", action="store_true", help="Poll every shard once and exit")
    parser.add_argument("--log-level", default=None, help="Override the profile log level")
    args = parser.parse_args(argv)

    if args.name:
        print(AGENT_NAME)
        return 0

    profile = VisitorAgentProfile.load(Path(args.profile)) if args.profile else VisitorAgentProfile()
    configure_logging(args.log_level or profile.wiring.log_level, profile.wiring.log_path)
    logger.info(
        "Starting %s profile=%s stream=%s bus=%s",
        profile.policy.agent_name,
        profile.profile_id,
        profile.wiring.stream_name,
        profile.wiring.event_bus_kind,
    )
    try:
        worker = VisitorAgentWorker(profile)
        if args.once:
            processed = worker.run_once()
            logger.info("Visitor agent processed=%s", processed)
            worker.close()
            return 0

        def _handle_signal(signum: int, _frame: Any) -> None:
            logger.info("Received signal %s, stopping", signum)
            worker.stop()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
        worker.run_forever()
    except Exception:
        logger.exception("Visitor agent failed")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
