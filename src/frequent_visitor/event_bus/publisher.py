"""Event Bus publisher interface + local file-bus adapter."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol


@dataclass(frozen=True)
class EbRef:
    topic: str
    partition: int
    offset: str
    offset_kind: str
    published_at_utc: str | None = None


class EventBusPublisher(Protocol):
    def publish(self, topic: str, partition_key: str, payload: dict[str, Any]) -> EbRef:
        ...


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")


class FileEventBusPublisher:
    """Local append-only bus for tests; provides stable offsets per topic.

    Each line keeps the raw record data as text so that readers hand back the
    exact bytes a producer wrote, malformed payloads included.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def publish(self, topic: str, partition_key: str, payload: dict[str, Any]) -> EbRef:
        return self.append_raw(topic, partition_key, encode_payload(payload))

    def append_raw(self, topic: str, partition_key: str, data: bytes, *, partition: int = 0) -> EbRef:
        topic_dir = self.root / topic
        topic_dir.mkdir(parents=True, exist_ok=True)
        log_path = topic_dir / f"partition={partition}.jsonl"
        head_path = topic_dir / f"head-{partition}.json"
        offset = _load_next_offset(log_path)
        record = {
            "partition_key": partition_key,
            "data": data.decode("utf-8", errors="surrogateescape"),
            "published_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        }
        with log_path.open("a", encoding="utf-8", errors="surrogateescape") as handle:
            handle.write(json.dumps(record, ensure_ascii=True, separators=(",", ":")) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        _write_head(head_path, offset + 1)
        return EbRef(
            topic=topic,
            partition=partition,
            offset=str(offset),
            offset_kind="file_line",
            published_at_utc=record["published_at_utc"],
        )

    def seal(self, topic: str, *, partition: int = 0) -> None:
        """Mark a partition as closed; readers report end-of-shard once drained."""
        topic_dir = self.root / topic
        topic_dir.mkdir(parents=True, exist_ok=True)
        (topic_dir / f"partition={partition}.sealed").touch()


def _load_next_offset(log_path: Path) -> int:
    if log_path.exists():
        with log_path.open("r", encoding="utf-8", errors="surrogateescape") as handle:
            return sum(1 for _ in handle)
    # offsets are line indexes, so a missing log restarts at zero whatever the head says
    return 0


def _write_head(head_path: Path, next_offset: int) -> None:
    tmp_path = head_path.with_suffix(".json.tmp")
    tmp_path.write_text(
        json.dumps({"next_offset": next_offset}, ensure_ascii=True, separators=(",", ":")),
        encoding="utf-8",
    )
    tmp_path.replace(head_path)
