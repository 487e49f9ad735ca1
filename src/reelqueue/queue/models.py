"""Pydantic models for queue data structures.

A message carries only what is needed to re-derive the work. Job state
lives in the status store, never in the message.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MessageStatus(str, Enum):
    """Queue-level message states.

    ready     → in_flight  (consumer claims)
    in_flight → (deleted)  (consumer acks)
    in_flight → ready      (holder reconnected or its lease went stale)
    """

    READY = "ready"
    IN_FLIGHT = "in_flight"


class QueueMessage(BaseModel):
    """Wire body of a queued job: {job_id, source_reference}."""

    job_id: int = Field(..., ge=1, description="Status store id of the job")
    source_reference: str = Field(..., min_length=1, description="Resource to process")

    def encode(self) -> str:
        """Serialize to the JSON wire format."""
        return self.model_dump_json()

    @classmethod
    def decode(cls, body: str) -> "QueueMessage":
        """Parse a JSON body.

        Raises:
            pydantic.ValidationError: If the body is not a valid message
        """
        return cls.model_validate_json(body)


class Delivery(BaseModel):
    """One claim of a message by a consumer."""

    message_id: int = Field(..., description="Queue row id")
    body: str = Field(..., description="Raw message body")
    consumer_id: str = Field(..., description="Consumer holding the message")
    delivery_count: int = Field(default=1, ge=1, description="Times this message was handed out")
    delivered_at: datetime = Field(default_factory=datetime.now, description="Claim time")

    @property
    def redelivered(self) -> bool:
        """True if an earlier holder never acknowledged this message."""
        return self.delivery_count > 1


class MessageEvent(BaseModel):
    """Audit log entry for queue activity."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    message_id: int = Field(..., description="Queue row id")
    event: str = Field(..., description="published, delivered, acked or requeued")
    consumer_id: Optional[str] = Field(default=None, description="Consumer involved")
    timestamp: datetime = Field(default_factory=datetime.now, description="Event time")
    detail: Optional[str] = Field(default=None, description="Extra context (truncated)")
