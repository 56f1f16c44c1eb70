"""Stream record shapes + local Event Bus reader (file-bus only)."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class StreamRecord:
    """One raw record as delivered by a shard, payload left undecoded."""

    sequence_number: str
    partition_key: str
    data: bytes
    published_at_utc: str | None = None


@dataclass(frozen=True)
class ShardRead:
    records: list[StreamRecord] = field(default_factory=list)
    shard_end: bool = False


@dataclass(frozen=True)
class EbRecord:
    topic: str
    partition: int
    offset: int
    record: dict[str, Any]

    def as_stream_record(self) -> StreamRecord:
        data = str(self.record.get("data") or "")
        return StreamRecord(
            sequence_number=str(self.offset),
            partition_key=str(self.record.get("partition_key") or ""),
            data=data.encode("utf-8", errors="surrogateescape"),
            published_at_utc=self.record.get("published_at_utc"),
        )


class EventBusReader:
    """Read-only tail/replay helper for the local file-bus."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def list_partitions(self, topic: str) -> list[int]:
        topic_dir = self.root / topic
        if not topic_dir.exists():
            return [0]
        parts: list[int] = []
        for path in topic_dir.glob("partition=*.jsonl"):
            try:
                parts.append(int(path.stem.replace("partition=", "")))
            except ValueError:
                continue
        return sorted(set(parts)) if parts else [0]

    def read(
        self,
        topic: str,
        *,
        partition: int = 0,
        from_offset: int = 0,
        max_records: int = 20,
    ) -> list[EbRecord]:
        if max_records <= 0:
            return []
        log_path = self._log_path(topic, partition)
        if not log_path.exists():
            return []
        records: list[EbRecord] = []
        with log_path.open("r", encoding="utf-8") as handle:
            for line_index, line in enumerate(handle):
                if line_index < from_offset:
                    continue
                if not line.strip():
                    continue
                payload = json.loads(line)
                records.append(
                    EbRecord(
                        topic=topic,
                        partition=partition,
                        offset=line_index,
                        record=payload,
                    )
                )
                if len(records) >= max_records:
                    break
        return records

    def read_shard(
        self,
        topic: str,
        *,
        partition: int = 0,
        from_offset: int = 0,
        max_records: int = 20,
    ) -> ShardRead:
        records = [
            record.as_stream_record()
            for record in self.read(topic, partition=partition, from_offset=from_offset, max_records=max_records)
        ]
        sealed = (self.root / topic / f"partition={partition}.sealed").exists()
        return ShardRead(records=records, shard_end=sealed and not records)

    def _log_path(self, topic: str, partition: int) -> Path:
        return self.root / topic / f"partition={partition}.jsonl"
