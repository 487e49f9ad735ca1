"""Pipeline executor and per-job workspace."""

from .executor import (
    PipelineExecutor,
    PipelineOutcome,
    PipelineResult,
    SubStage,
    artifact_key,
)
from .workspace import job_workspace

__all__ = [
    "PipelineExecutor",
    "PipelineOutcome",
    "PipelineResult",
    "SubStage",
    "artifact_key",
    "job_workspace",
]
