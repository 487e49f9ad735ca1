from __future__ import annotations

"""Abstract base class for durable queue backends.

This module defines the producer/consumer protocol used between the
submission path and the pipeline workers. The local-first implementation is
SQLite (see sqlite_backend.py); a broker-backed implementation only has to
honour the same contract.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from .models import Delivery, QueueMessage


class QueueBackend(ABC):
    """Abstract durable queue interface.

    Implementations must provide:
    - Persistent publish (message survives a process restart once publish returns)
    - Atomic claim: no two consumers hold the same unacknowledged message
    - Per-consumer prefetch limit (one in-flight message by default)
    - Redelivery of messages whose holder disconnected or crashed before ack
    - Explicit connection lifecycle; QueueUnavailable when not connected
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True if the backend can currently accept operations."""
        pass

    @abstractmethod
    def connect(self) -> None:
        """Open (or reopen) the connection.

        Raises:
            QueueUnavailable: If the queue cannot be reached
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the connection. Safe to call repeatedly."""
        pass

    @abstractmethod
    def publish(self, message: "QueueMessage") -> int:
        """Persist message and return its queue id.

        Implementation notes:
        - MUST be durable when this returns (committed)
        - Raises QueueUnavailable if not connected
        """
        pass

    @abstractmethod
    def claim(self, consumer_id: str) -> Optional["Delivery"]:
        """Atomically hand the oldest ready message to consumer_id.

        Returns:
            Delivery, or None if the queue is empty or the consumer already
            holds its prefetch limit of unacknowledged messages

        Implementation notes:
        - MUST be safe under concurrent consumers
        - Should increment delivery_count on every claim
        """
        pass

    @abstractmethod
    def ack(self, delivery: "Delivery") -> bool:
        """Permanently remove the message.

        Returns:
            False if the consumer no longer holds the message (its lease was
            taken over after being marked stale)
        """
        pass

    @abstractmethod
    def heartbeat(self, delivery: "Delivery") -> None:
        """Refresh the in-flight lease for a long-running handler."""
        pass

    @abstractmethod
    def recover(self, consumer_id: str) -> int:
        """Return every message held by consumer_id to the ready state.

        Called on (re)connect: a message held across a dropped connection
        was never acknowledged and must be redelivered.

        Returns:
            Count of released messages
        """
        pass

    @abstractmethod
    def requeue_stale(self, timeout_s: float) -> int:
        """Crash recovery: release messages with no heartbeat in timeout_s.

        Returns:
            Count of released messages
        """
        pass

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Message counts: ready, in_flight, total."""
        pass
