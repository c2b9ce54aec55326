"""Domain entities for background scraping jobs."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union


JobKind = Literal["refresh", "extraction"]


@dataclass(frozen=True, slots=True)
class JobProgress:
    """Counters reported while a job walks its ticket list."""

    current: int = 0
    total: int = 0
    success: int = 0
    failed: int = 0
    step: str = ""
    last_update: str | None = None

    @property
    def percent(self) -> float:
        return (self.current / self.total) * 100 if self.total > 0 else 0.0


@dataclass(frozen=True, slots=True)
class Idle:
    status: Literal["idle"] = "idle"
    progress: JobProgress = field(default_factory=JobProgress)


@dataclass(frozen=True, slots=True)
class Running:
    progress: JobProgress = field(default_factory=JobProgress)
    status: Literal["running"] = "running"


@dataclass(frozen=True, slots=True)
class Completed:
    progress: JobProgress
    finished_at: str
    summary: dict[str, Any] = field(default_factory=dict)
    status: Literal["completed"] = "completed"


@dataclass(frozen=True, slots=True)
class Failed:
    progress: JobProgress
    error: str
    finished_at: str
    status: Literal["failed"] = "failed"


JobState = Union[Idle, Running, Completed, Failed]


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    """Immutable view of one job; the registry swaps snapshots wholesale."""

    job_id: str
    kind: JobKind
    state: JobState
    started_at: str
    domain: str | None = None
    results: tuple[dict[str, Any], ...] = ()

    @property
    def is_running(self) -> bool:
        return isinstance(self.state, Running)

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.state, (Completed, Failed))
