"""Durable queue: producer/consumer protocol between submission and workers."""

from .backends import QueueBackend
from .consumer import QueueConsumer, default_consumer_id
from .models import Delivery, MessageEvent, MessageStatus, QueueMessage
from .sqlite_backend import SQLiteQueue

__all__ = [
    "QueueBackend",
    "QueueConsumer",
    "default_consumer_id",
    "Delivery",
    "MessageEvent",
    "MessageStatus",
    "QueueMessage",
    "SQLiteQueue",
]
