"""
Pipeline executor: drives one job through the ordered stages.

The executor is the queue consumer's handler. For each message it moves the
job to `processing`, runs fetch -> (audio) -> (analyze) -> cut -> publish in
a private workspace, and writes exactly one terminal state. The consumer
acknowledges the message only after handle() returns.

Failure policy:
- StageFailure: job -> failed, handle() returns normally (message acked).
- Missing row / job already terminal: logged, skipped (message acked).
- StoreUnavailable: the store write is retried with a fixed delay until it
  succeeds; infrastructure trouble never turns into a job failure.
- Anything escaping handle() (process crash, interrupt) leaves the job in
  `processing` with the message unacked, so it is redelivered.
"""

import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from ..errors import (
    InvalidStateTransition,
    JobNotFoundError,
    StageFailure,
    StoreUnavailable,
)
from ..jobs.store import StatusStore
from ..logging import get_logger, job_context, set_stage
from ..models import Segment
from ..queue.models import Delivery, QueueMessage
from ..segments import FALLBACK_DURATION_S, fallback_segment, segment_from_analysis
from ..stages import MediaHandle, PipelineStages
from .workspace import job_workspace

logger = get_logger("pipeline.executor")


class SubStage(str, Enum):
    """Fine-grained progress, logged only (the store sees `processing`)."""

    RECEIVED = "received"
    DOWNLOADING = "downloading"
    TRANSCODING = "transcoding"
    ANALYZING = "analyzing"
    CUTTING = "cutting"
    UPLOADING = "uploading"
    DONE = "done"


class PipelineOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineResult(BaseModel):
    """What happened to one message."""

    job_id: int
    outcome: PipelineOutcome
    result_reference: Optional[str] = None
    error: Optional[str] = None
    duration_s: float = Field(default=0.0, ge=0.0)


def artifact_key(job_id: int) -> str:
    """Stable per-job name, so a redelivered job overwrites its own artifact."""
    return f"job_{job_id}_short"


class PipelineExecutor:
    """Runs messages end-to-end, one at a time."""

    def __init__(
        self,
        store: StatusStore,
        stages: PipelineStages,
        workspace_root: Optional[str] = None,
        fallback_duration_s: float = FALLBACK_DURATION_S,
        store_retry_delay_s: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.stages = stages
        self.workspace_root = workspace_root
        self.fallback_duration_s = fallback_duration_s
        self.store_retry_delay_s = store_retry_delay_s
        self._sleep = sleep

    def handle_delivery(self, message: QueueMessage, delivery: Delivery) -> PipelineResult:
        """QueueConsumer handler."""
        return self.handle(message, redelivered=delivery.redelivered)

    def handle(self, message: QueueMessage, redelivered: bool = False) -> PipelineResult:
        """Process one message to a terminal outcome."""
        started = time.monotonic()
        job_id = message.job_id

        with job_context(job_id):
            set_stage(SubStage.RECEIVED.value)
            logger.info(
                "job_received",
                source_reference=message.source_reference,
                redelivered=redelivered,
            )

            try:
                self._store_call(self.store.mark_processing, job_id)
            except JobNotFoundError:
                logger.error("job_row_missing", error="message refers to a job with no row")
                return self._result(job_id, PipelineOutcome.SKIPPED, started, error="job not found")
            except InvalidStateTransition as e:
                logger.warning("job_already_terminal", state=e.current_state)
                return self._result(
                    job_id, PipelineOutcome.SKIPPED, started, error=f"already {e.current_state}"
                )

            try:
                with job_workspace(job_id, self.workspace_root) as workspace:
                    reference = self._run_stages(message, workspace)
            except StageFailure as e:
                logger.error("stage_failed", failed_stage=e.stage, error=e.detail)
                if not self._write_terminal(self.store.mark_failed, job_id):
                    return self._result(job_id, PipelineOutcome.SKIPPED, started, error=str(e))
                result = self._result(job_id, PipelineOutcome.FAILED, started, error=str(e))
                logger.info("job_failed", duration_s=round(result.duration_s, 2))
                return result

            if not self._write_terminal(self.store.mark_completed, job_id, reference):
                return self._result(job_id, PipelineOutcome.SKIPPED, started)
            result = self._result(
                job_id, PipelineOutcome.COMPLETED, started, result_reference=reference
            )
            logger.info(
                "job_completed",
                result_reference=reference,
                duration_s=round(result.duration_s, 2),
            )
            return result

    def _run_stages(self, message: QueueMessage, workspace: Path) -> str:
        stages = self.stages

        set_stage(SubStage.DOWNLOADING.value)
        source = self._call_stage(
            stages.fetcher.stage, stages.fetcher.fetch,
            message.source_reference, workspace / "source.mp4",
        )

        segment = self._select_segment(source, workspace)

        set_stage(SubStage.CUTTING.value)
        logger.info("cutting", start=segment.start, end=segment.end)
        clip = self._call_stage(
            stages.cutter.stage, stages.cutter.cut, source, segment, workspace / "short.mp4"
        )

        set_stage(SubStage.UPLOADING.value)
        reference = self._call_stage(
            stages.publisher.stage, stages.publisher.publish, clip, artifact_key(message.job_id)
        )
        if not reference:
            raise StageFailure(stages.publisher.stage, "publisher returned an empty reference")

        set_stage(SubStage.DONE.value)
        return reference

    def _select_segment(self, source: MediaHandle, workspace: Path) -> Segment:
        """Ask the analyzer for a segment, or fall back to (0, fallback_duration_s)."""
        stages = self.stages
        if stages.analyzer is None:
            logger.info("analysis_unavailable_using_fallback", duration_s=self.fallback_duration_s)
            return fallback_segment(self.fallback_duration_s)

        media = source
        if stages.transformer is not None:
            set_stage(SubStage.TRANSCODING.value)
            media = self._call_stage(
                stages.transformer.stage, stages.transformer.transform,
                source, workspace / "audio.mp3",
            )

        set_stage(SubStage.ANALYZING.value)
        analysis = self._call_stage(stages.analyzer.stage, stages.analyzer.analyze, media)
        return segment_from_analysis(analysis)

    @staticmethod
    def _call_stage(stage: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run an adapter call; any ordinary exception becomes a StageFailure."""
        try:
            return fn(*args)
        except StageFailure:
            raise
        except Exception as e:
            raise StageFailure(stage, f"{type(e).__name__}: {e}") from e

    def _store_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Retry a store write until the store is reachable again."""
        while True:
            try:
                return fn(*args)
            except StoreUnavailable as e:
                logger.warning(
                    "store_unavailable", error=str(e), retry_in_s=self.store_retry_delay_s
                )
                self._sleep(self.store_retry_delay_s)

    def _write_terminal(self, fn: Callable[..., Any], job_id: int, *args: Any) -> bool:
        """Write completed/failed. Returns False if the row moved on without us."""
        try:
            self._store_call(fn, job_id, *args)
        except JobNotFoundError:
            logger.error("job_row_missing", error="row deleted while processing")
            return False
        except InvalidStateTransition as e:
            logger.warning("terminal_write_conflict", state=e.current_state)
            return False
        return True

    @staticmethod
    def _result(
        job_id: int,
        outcome: PipelineOutcome,
        started: float,
        result_reference: Optional[str] = None,
        error: Optional[str] = None,
    ) -> PipelineResult:
        return PipelineResult(
            job_id=job_id,
            outcome=outcome,
            result_reference=result_reference,
            error=error,
            duration_s=time.monotonic() - started,
        )
