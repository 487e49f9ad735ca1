"""Job lifecycle model and status store."""

from .models import ALLOWED_TRANSITIONS, TERMINAL_STATES, Job, JobState, can_transition
from .store import SQLStatusStore, StatusStore

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "Job",
    "JobState",
    "can_transition",
    "StatusStore",
    "SQLStatusStore",
]
