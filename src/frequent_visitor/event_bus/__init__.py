"""Event Bus interfaces + adapters."""

from .publisher import EbRef, EventBusPublisher, FileEventBusPublisher
from .reader import EbRecord, EventBusReader, ShardRead, StreamRecord

__all__ = [
    "EbRef",
    "EventBusPublisher",
    "FileEventBusPublisher",
    "EbRecord",
    "EventBusReader",
    "ShardRead",
    "StreamRecord",
]
