"""Pydantic models for the job lifecycle.

The status store persists only the four coarse states below; finer
pipeline progress lives in the executor's logs.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class JobState(str, Enum):
    """Job lifecycle states.

    State transitions:
        queued     → processing  (worker picks up the message)
        processing → processing  (redelivery after a crash)
        processing → completed   (all stages succeeded)
        processing → failed      (a stage failed)
    completed and failed are terminal.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})

ALLOWED_TRANSITIONS = {
    JobState.QUEUED: frozenset({JobState.PROCESSING}),
    JobState.PROCESSING: frozenset({JobState.PROCESSING, JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


def can_transition(current: JobState, target: JobState) -> bool:
    """Return True if current → target is a legal job transition."""
    return JobState(target) in ALLOWED_TRANSITIONS[JobState(current)]


class Job(BaseModel):
    """One unit of submitted work as recorded in the status store."""

    id: int = Field(..., ge=1, description="Store-assigned identifier")
    source_reference: str = Field(..., min_length=1, description="Resource to process (URL)")
    state: JobState = Field(default=JobState.QUEUED, description="Current lifecycle state")
    result_reference: Optional[str] = Field(
        default=None, description="Published artifact reference (completed only)"
    )
    created_at: datetime = Field(..., description="Creation time")
    updated_at: Optional[datetime] = Field(default=None, description="Last state write")

    @model_validator(mode="after")
    def result_only_when_completed(self) -> "Job":
        """result_reference is set if and only if the job completed."""
        if self.state == JobState.COMPLETED and not self.result_reference:
            raise ValueError("completed job must carry a result_reference")
        if self.state != JobState.COMPLETED and self.result_reference is not None:
            raise ValueError(f"{self.state.value} job must not carry a result_reference")
        return self

    def to_public(self) -> dict:
        """Status-boundary view of the job."""
        return {
            "job_id": self.id,
            "source_reference": self.source_reference,
            "state": self.state.value,
            "result_reference": self.result_reference,
            "created_at": self.created_at.isoformat(),
        }
