from __future__ import annotations

from botocore.exceptions import ClientError
import pytest

from frequent_visitor.event_bus.kinesis import KinesisEventBusPublisher, KinesisConfig, KinesisEventBusReader


def _client_error(code: str, message: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message}},
        operation_name="KinesisOperation",
    )


class _FallbackIteratorClient:
    def __init__(self) -> None:
        self.iterator_calls: list[dict[str, object]] = []

    def list_shards(self, *, StreamName: str):  # type: ignore[no-untyped-def]
        return {"Shards": [{"ShardId": "shardId-000000000000"}]}

    def get_shard_iterator(self, **kwargs):  # type: ignore[no-untyped-def]
        self.iterator_calls.append(dict(kwargs))
        if len(self.iterator_calls) == 1:
            raise _client_error("ResourceNotFoundException", "stale sequence")
        return {"ShardIterator": "it-fallback"}

    def get_records(self, **kwargs):  # type: ignore[no-untyped-def]
        return {
            "Records": [
                {
                    "SequenceNumber": "42",
                    "PartitionKey": "s1",
                    "Data": b'{"eventName":"userVisitsStore","userSessionId":"s1"}',
                }
            ],
            "NextShardIterator": "it-next",
        }


class _ListShardFailureClient:
    def list_shards(self, *, StreamName: str):  # type: ignore[no-untyped-def]
        raise _client_error("InternalError", "temporary backend outage")


class _RecordsFailureClient:
    def get_shard_iterator(self, **kwargs):  # type: ignore[no-untyped-def]
        return {"ShardIterator": "it-1"}

    def get_records(self, **kwargs):  # type: ignore[no-untyped-def]
        raise _client_error("ProvisionedThroughputExceededException", "slow down")


class _ClosedShardClient:
    def get_shard_iterator(self, **kwargs):  # type: ignore[no-untyped-def]
        return {"ShardIterator": "it-1"}

    def get_records(self, **kwargs):  # type: ignore[no-untyped-def]
        return {"Records": [], "NextShardIterator": None}


class _PutRecordClient:
    def __init__(self) -> None:
        self.calls: list[dict[str, object]] = []

    def put_record(self, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append(dict(kwargs))
        return {"ShardId": "shardId-000000000003", "SequenceNumber": "9001"}


def _reader(client: object) -> KinesisEventBusReader:
    reader = KinesisEventBusReader(stream_name="ema-event-stream", region="us-east-2", endpoint_url="http://localhost:4566")
    reader._client = client  # type: ignore[attr-defined]
    return reader


def test_kinesis_reader_resets_stale_sequence_and_falls_back_to_start_position() -> None:
    fake = _FallbackIteratorClient()
    reader = _reader(fake)

    batch = reader.read(
        stream_name="ema-event-stream",
        shard_id="shardId-000000000000",
        from_sequence="1001",
        limit=10,
        start_position="latest",
    )

    assert len(batch.records) == 1
    assert batch.records[0].data == b'{"eventName":"userVisitsStore","userSessionId":"s1"}'
    assert batch.records[0].sequence_number == "42"
    assert batch.shard_end is False
    assert fake.iterator_calls[0]["ShardIteratorType"] == "AFTER_SEQUENCE_NUMBER"
    assert fake.iterator_calls[1]["ShardIteratorType"] == "LATEST"

    reader.read(
        stream_name="ema-event-stream",
        shard_id="shardId-000000000000",
        from_sequence="1001",
        limit=10,
        start_position="latest",
    )
    assert len(fake.iterator_calls) == 3
    assert fake.iterator_calls[2]["ShardIteratorType"] == "LATEST"
    assert "StartingSequenceNumber" not in fake.iterator_calls[2]


def test_kinesis_reader_returns_empty_shard_list_on_transient_list_failure() -> None:
    reader = _reader(_ListShardFailureClient())
    assert reader.list_shards("ema-event-stream") == []


def test_kinesis_reader_returns_empty_batch_on_get_records_failure() -> None:
    reader = _reader(_RecordsFailureClient())
    batch = reader.read(
        stream_name="ema-event-stream",
        shard_id="shardId-000000000000",
        from_sequence=None,
        limit=10,
    )
    assert batch.records == []
    assert batch.shard_end is False


def test_kinesis_reader_reports_closed_shard() -> None:
    reader = _reader(_ClosedShardClient())
    batch = reader.read(
        stream_name="ema-event-stream",
        shard_id="shardId-000000000000",
        from_sequence="77",
        limit=10,
    )
    assert batch.records == []
    assert batch.shard_end is True


def test_kinesis_publisher_uses_partition_key_and_compact_payload() -> None:
    publisher = KinesisEventBusPublisher(
        KinesisConfig(stream_name="ema-event-stream", region="us-east-2", endpoint_url="http://localhost:4566")
    )
    fake = _PutRecordClient()
    publisher._client = fake  # type: ignore[attr-defined]

    ref = publisher.publish("ema-event-stream", "s1", {"eventName": "userTag", "userSessionId": "s1"})

    assert fake.calls == [
        {
            "StreamName": "ema-event-stream",
            "PartitionKey": "s1",
            "Data": b'{"eventName":"userTag","userSessionId":"s1"}',
        }
    ]
    assert ref.offset == "9001"
    assert ref.partition == 3
    assert ref.offset_kind == "kinesis_sequence"


def test_kinesis_publisher_requires_partition_key() -> None:
    publisher = KinesisEventBusPublisher(
        KinesisConfig(stream_name="ema-event-stream", region="us-east-2", endpoint_url="http://localhost:4566")
    )
    publisher._client = _PutRecordClient()  # type: ignore[attr-defined]
    with pytest.raises(RuntimeError, match="KINESIS_PARTITION_KEY_MISSING"):
        publisher.publish("ema-event-stream", "", {"eventName": "userTag"})


class _ShardLogClient:
    """Iterators are positions in one shard log; LATEST points past the last record."""

    def __init__(self) -> None:
        self.records: list[dict[str, object]] = []
        self.iterator_calls: list[dict[str, object]] = []
        self.expired: set[str] = set()

    def put(self, sequence_number: str) -> None:
        self.records.append({"SequenceNumber": sequence_number, "PartitionKey": "s1", "Data": b"{}"})

    def get_shard_iterator(self, **kwargs):  # type: ignore[no-untyped-def]
        self.iterator_calls.append(dict(kwargs))
        if kwargs["ShardIteratorType"] == "LATEST":
            index = len(self.records)
        elif kwargs["ShardIteratorType"] == "AFTER_SEQUENCE_NUMBER":
            sequences = [record["SequenceNumber"] for record in self.records]
            index = sequences.index(kwargs["StartingSequenceNumber"]) + 1
        else:
            index = 0
        return {"ShardIterator": f"it-{index}"}

    def get_records(self, *, ShardIterator: str, Limit: int):  # type: ignore[no-untyped-def]
        if ShardIterator in self.expired:
            self.expired.discard(ShardIterator)
            raise _client_error("ExpiredIteratorException", "iterator expired")
        index = int(ShardIterator.split("-", 1)[1])
        batch = self.records[index : index + Limit]
        return {"Records": batch, "NextShardIterator": f"it-{index + len(batch)}"}


def _poll(reader: KinesisEventBusReader, position: str | None) -> tuple[list[str], str | None]:
    batch = reader.read(
        stream_name="ema-event-stream",
        shard_id="shardId-000000000000",
        from_sequence=position,
        limit=10,
        start_position="latest",
    )
    seen = [record.sequence_number for record in batch.records]
    return seen, seen[-1] if seen else position


def test_latest_reader_keeps_iterator_between_polls() -> None:
    fake = _ShardLogClient()
    reader = _reader(fake)

    seen, position = _poll(reader, None)
    assert seen == []

    delivered: list[str] = []
    for sequence_number in ("100", "101", "102"):
        fake.put(sequence_number)
        seen, position = _poll(reader, position)
        delivered.extend(seen)
        empty, position = _poll(reader, position)
        assert empty == []

    assert delivered == ["100", "101", "102"]
    assert len(fake.iterator_calls) == 1
    assert fake.iterator_calls[0]["ShardIteratorType"] == "LATEST"


def test_expired_iterator_is_renewed_from_last_position() -> None:
    fake = _ShardLogClient()
    reader = _reader(fake)
    _, position = _poll(reader, None)
    fake.put("100")
    seen, position = _poll(reader, position)
    assert seen == ["100"]

    fake.expired.add("it-1")
    fake.put("101")
    seen, position = _poll(reader, position)

    assert seen == ["101"]
    assert len(fake.iterator_calls) == 2
    assert fake.iterator_calls[1]["ShardIteratorType"] == "AFTER_SEQUENCE_NUMBER"
    assert fake.iterator_calls[1]["StartingSequenceNumber"] == "100"


def test_new_position_requests_fresh_iterator() -> None:
    fake = _ShardLogClient()
    for sequence_number in ("100", "101", "102"):
        fake.put(sequence_number)
    reader = _reader(fake)

    seen, _ = _poll(reader, "100")

    assert seen == ["101", "102"]
    assert fake.iterator_calls[0]["ShardIteratorType"] == "AFTER_SEQUENCE_NUMBER"
