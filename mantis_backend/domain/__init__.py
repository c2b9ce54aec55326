"""Domain layer definitions."""

from .jobs import Completed, Failed, Idle, JobKind, JobProgress, JobSnapshot, JobState, Running

__all__ = [
    "Completed",
    "Failed",
    "Idle",
    "JobKind",
    "JobProgress",
    "JobSnapshot",
    "JobState",
    "Running",
]
