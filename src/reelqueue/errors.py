"""
Error types for the job pipeline.

All errors inherit from ReelQueueError for easy catching.
Infrastructure errors are recovered locally (reconnect and retry) and never
reach a job record; StageFailure is the only error that becomes a job's
`failed` state.
"""


class ReelQueueError(Exception):
    """Base exception for all reelqueue failures."""
    pass


class ValidationError(ReelQueueError):
    """Raised when a submission is missing or malformed. No job is created."""
    pass


class InfrastructureError(ReelQueueError):
    """A dependency (queue, status store) is momentarily unreachable."""
    pass


class QueueUnavailable(InfrastructureError):
    """Raised when the durable queue connection is not established."""
    pass


class StoreUnavailable(InfrastructureError):
    """Raised when the status store cannot be reached."""
    pass


class StageFailure(ReelQueueError):
    """Business-level failure of one pipeline stage."""

    def __init__(self, stage: str, detail: str):
        self.stage = stage
        self.detail = detail
        super().__init__(f"{stage} failed: {detail}")


class InvariantViolation(ReelQueueError):
    """Raised when stored state contradicts what a message or caller expects."""
    pass


class InvalidStateTransition(InvariantViolation):
    """Raised when attempting an illegal job state transition."""

    def __init__(self, job_id: int, current_state: str, target_state: str):
        self.job_id = job_id
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid state transition for job {job_id}: "
            f"{current_state} -> {target_state}"
        )


class JobNotFoundError(ReelQueueError):
    """Raised when a job cannot be found in the status store."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")
