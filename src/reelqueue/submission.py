"""Job submission path: validate, record, enqueue, return immediately.

Ordering matters here. The status store row is written before the
message is published, so every message a worker can observe refers to an
existing row. If publishing fails after the row was written, the row is
removed again: a `queued` job with no message would never make progress.
"""

from typing import Any
from urllib.parse import urlparse

from .errors import QueueUnavailable, ValidationError
from .jobs.models import Job
from .jobs.store import StatusStore
from .logging import get_logger
from .queue.backends import QueueBackend
from .queue.models import QueueMessage

logger = get_logger("submission")


def validate_source_reference(source_reference: Any) -> str:
    """Return the normalized reference or raise ValidationError."""
    if source_reference is None:
        raise ValidationError("Missing source_reference")
    if not isinstance(source_reference, str):
        raise ValidationError("source_reference must be a string")

    reference = source_reference.strip()
    if not reference:
        raise ValidationError("Missing source_reference")

    parsed = urlparse(reference)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"source_reference must be an http(s) URL: {reference!r}")

    return reference


class JobSubmitter:
    """Creates jobs and hands them to the durable queue.

    Both collaborators are owned by the caller and injected here; the
    submitter never opens or reopens connections itself.
    """

    def __init__(self, store: StatusStore, queue: QueueBackend):
        self.store = store
        self.queue = queue

    def submit(self, source_reference: Any) -> Job:
        """Accept one request.

        Returns:
            The created job, in state `queued`

        Raises:
            ValidationError: Missing or malformed reference (nothing created)
            QueueUnavailable: Queue not connected or publish failed
            StoreUnavailable: Status store unreachable
        """
        reference = validate_source_reference(source_reference)

        if not self.queue.is_connected:
            raise QueueUnavailable("Queue not ready")

        job = self.store.create(reference)

        try:
            self.queue.publish(QueueMessage(job_id=job.id, source_reference=reference))
        except QueueUnavailable:
            logger.error("publish_failed_rolling_back", job_id=job.id)
            self.store.delete(job.id)
            raise

        logger.info("job_queued", job_id=job.id, source_reference=reference)
        return job
