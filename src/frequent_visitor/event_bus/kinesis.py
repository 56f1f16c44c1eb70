"""Kinesis Event Bus adapters (publish + shard polling)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .publisher import EbRef, encode_payload
from .reader import ShardRead, StreamRecord

logger = logging.getLogger("frequent_visitor.event_bus")

_STALE_SEQUENCE_ERROR_CODES = {
    "InvalidArgumentException",
    "ResourceNotFoundException",
}


@dataclass(frozen=True)
class KinesisConfig:
    stream_name: str | None
    region: str | None
    endpoint_url: str | None


class KinesisEventBusPublisher:
    def __init__(self, config: KinesisConfig) -> None:
        self.config = config
        self._client = boto3.client(
            "kinesis",
            region_name=config.region,
            endpoint_url=config.endpoint_url,
        )

    def publish(self, topic: str, partition_key: str, payload: dict[str, Any]) -> EbRef:
        stream_name = self.config.stream_name or topic
        if not stream_name:
            raise RuntimeError("KINESIS_STREAM_NAME_MISSING")
        if not partition_key:
            raise RuntimeError("KINESIS_PARTITION_KEY_MISSING")
        data = encode_payload(payload)
        response = self._client.put_record(
            StreamName=stream_name,
            PartitionKey=partition_key,
            Data=data,
        )
        logger.info(
            "EB publish stream=%s partition_key=%s seq=%s bytes=%s",
            stream_name,
            partition_key,
            response.get("SequenceNumber", ""),
            len(data),
        )
        published_at = datetime.now(tz=timezone.utc).isoformat()
        return EbRef(
            topic=stream_name,
            partition=_partition_from_shard(response.get("ShardId", "shardId-000000000000")),
            offset=response.get("SequenceNumber", ""),
            offset_kind="kinesis_sequence",
            published_at_utc=published_at,
        )


def build_kinesis_publisher(
    *,
    stream_name: str | None,
    region: str | None = None,
    endpoint_url: str | None = None,
) -> KinesisEventBusPublisher:
    region = region or os.getenv("AWS_DEFAULT_REGION") or os.getenv("AWS_REGION")
    endpoint = endpoint_url or os.getenv("AWS_ENDPOINT_URL") or os.getenv("KINESIS_ENDPOINT_URL")
    return KinesisEventBusPublisher(KinesisConfig(stream_name=stream_name, region=region, endpoint_url=endpoint))


class KinesisEventBusReader:
    def __init__(self, *, stream_name: str | None, region: str | None = None, endpoint_url: str | None = None) -> None:
        self.stream_name = stream_name
        self._stale_sequence_by_shard: dict[tuple[str, str], str] = {}
        self._next_iterator_by_shard: dict[tuple[str, str], tuple[str | None, str]] = {}
        self._client = boto3.client(
            "kinesis",
            region_name=region or os.getenv("AWS_DEFAULT_REGION") or os.getenv("AWS_REGION"),
            endpoint_url=endpoint_url or os.getenv("AWS_ENDPOINT_URL") or os.getenv("KINESIS_ENDPOINT_URL"),
        )

    def list_shards(self, stream_name: str) -> list[str]:
        if not stream_name:
            raise RuntimeError("KINESIS_STREAM_NAME_MISSING")
        try:
            response = self._client.list_shards(StreamName=stream_name)
        except Exception as exc:
            logger.warning(
                "Kinesis list_shards failed stream=%s code=%s detail=%s",
                stream_name,
                _error_code(exc),
                _error_detail(exc),
            )
            return []
        return [shard.get("ShardId", "") for shard in response.get("Shards", []) if shard.get("ShardId")]

    def read(
        self,
        *,
        stream_name: str,
        shard_id: str,
        from_sequence: str | None,
        limit: int,
        start_position: str = "latest",
    ) -> ShardRead:
        """Poll one batch from a shard.

        The ``NextShardIterator`` of every poll is kept per shard and reused as long
        as the caller asks from the position that poll left off at. A new iterator
        is only requested on the first read, when the caller resumes from another
        position, or when the kept one has expired. Transient API failures yield an
        empty batch so the shard loop simply polls again; a missing
        ``NextShardIterator`` marks the shard as closed.
        """
        if not stream_name:
            raise RuntimeError("KINESIS_STREAM_NAME_MISSING")
        key = (stream_name, shard_id)
        kept = self._next_iterator_by_shard.get(key)
        reused = kept is not None and kept[0] == from_sequence
        if kept is not None and reused:
            shard_iterator: str | None = kept[1]
        else:
            shard_iterator = self._open_iterator(
                stream_name=stream_name,
                shard_id=shard_id,
                from_sequence=from_sequence,
                start_position=start_position,
            )
        if not shard_iterator:
            return ShardRead()

        records_resp: dict[str, Any] | None = None
        try:
            records_resp = self._client.get_records(ShardIterator=shard_iterator, Limit=max(1, int(limit)))
        except Exception as exc:
            if not (reused and _error_code(exc) == "ExpiredIteratorException"):
                logger.warning(
                    "Kinesis get_records failed stream=%s shard=%s code=%s detail=%s",
                    stream_name,
                    shard_id,
                    _error_code(exc),
                    _error_detail(exc),
                )
                return ShardRead()
            logger.info("Kinesis iterator expired stream=%s shard=%s seq=%s", stream_name, shard_id, from_sequence)
            self._next_iterator_by_shard.pop(key, None)
            shard_iterator = self._open_iterator(
                stream_name=stream_name,
                shard_id=shard_id,
                from_sequence=from_sequence,
                start_position=start_position,
            )
        if records_resp is None:
            if not shard_iterator:
                return ShardRead()
            try:
                records_resp = self._client.get_records(ShardIterator=shard_iterator, Limit=max(1, int(limit)))
            except Exception as exc:
                logger.warning(
                    "Kinesis get_records failed stream=%s shard=%s code=%s detail=%s",
                    stream_name,
                    shard_id,
                    _error_code(exc),
                    _error_detail(exc),
                )
                return ShardRead()

        records: list[StreamRecord] = []
        for record in records_resp.get("Records", []):
            records.append(
                StreamRecord(
                    sequence_number=str(record.get("SequenceNumber") or ""),
                    partition_key=str(record.get("PartitionKey") or ""),
                    data=_raw_bytes(record.get("Data")),
                    published_at_utc=_arrival_timestamp(record.get("ApproximateArrivalTimestamp")),
                )
            )
        next_iterator = records_resp.get("NextShardIterator")
        if next_iterator is None:
            self._next_iterator_by_shard.pop(key, None)
            return ShardRead(records=records, shard_end=True)
        position = records[-1].sequence_number if records else from_sequence
        self._next_iterator_by_shard[key] = (position, str(next_iterator))
        return ShardRead(records=records)

    def _open_iterator(
        self,
        *,
        stream_name: str,
        shard_id: str,
        from_sequence: str | None,
        start_position: str,
    ) -> str | None:
        key = (stream_name, shard_id)
        cached_stale = self._stale_sequence_by_shard.get(key)
        sequence_for_iterator = from_sequence
        if sequence_for_iterator and cached_stale == sequence_for_iterator:
            sequence_for_iterator = None
        elif sequence_for_iterator and cached_stale and cached_stale != sequence_for_iterator:
            self._stale_sequence_by_shard.pop(key, None)
        iterator_args = _iterator_args(
            stream_name=stream_name,
            shard_id=shard_id,
            from_sequence=sequence_for_iterator,
            start_position=start_position,
        )
        try:
            iterator_resp = self._client.get_shard_iterator(**iterator_args)
        except Exception as exc:
            if sequence_for_iterator and _error_code(exc) in _STALE_SEQUENCE_ERROR_CODES:
                self._stale_sequence_by_shard[key] = sequence_for_iterator
                fallback_args = _iterator_args(
                    stream_name=stream_name,
                    shard_id=shard_id,
                    from_sequence=None,
                    start_position=start_position,
                )
                logger.warning(
                    "Kinesis stale checkpoint reset stream=%s shard=%s seq=%s code=%s",
                    stream_name,
                    shard_id,
                    sequence_for_iterator,
                    _error_code(exc),
                )
                try:
                    iterator_resp = self._client.get_shard_iterator(**fallback_args)
                except Exception as fallback_exc:
                    logger.warning(
                        "Kinesis fallback iterator failed stream=%s shard=%s code=%s detail=%s",
                        stream_name,
                        shard_id,
                        _error_code(fallback_exc),
                        _error_detail(fallback_exc),
                    )
                    return None
            else:
                logger.warning(
                    "Kinesis get_shard_iterator failed stream=%s shard=%s code=%s detail=%s",
                    stream_name,
                    shard_id,
                    _error_code(exc),
                    _error_detail(exc),
                )
                return None
        shard_iterator = iterator_resp.get("ShardIterator")
        if not shard_iterator:
            return None
        # the caller keeps asking from the same position until records arrive
        self._next_iterator_by_shard[key] = (from_sequence, str(shard_iterator))
        return str(shard_iterator)


def _iterator_args(
    *,
    stream_name: str,
    shard_id: str,
    from_sequence: str | None,
    start_position: str,
) -> dict[str, Any]:
    args: dict[str, Any] = {
        "StreamName": stream_name,
        "ShardId": shard_id,
        "ShardIteratorType": "TRIM_HORIZON",
    }
    if from_sequence:
        args["ShardIteratorType"] = "AFTER_SEQUENCE_NUMBER"
        args["StartingSequenceNumber"] = from_sequence
    elif str(start_position).strip().lower() == "latest":
        args["ShardIteratorType"] = "LATEST"
    return args


def _raw_bytes(data: Any) -> bytes:
    if data is None:
        return b""
    if isinstance(data, bytes):
        return data
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _arrival_timestamp(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


def _partition_from_shard(shard_id: str) -> int:
    token = str(shard_id).rsplit("-", 1)[-1]
    try:
        return int(token)
    except ValueError:
        return 0


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return exc.__class__.__name__


def _error_detail(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Message") or "")[:256]
    return str(exc)[:256]
