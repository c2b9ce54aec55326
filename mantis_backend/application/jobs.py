"""Registry of background jobs keyed by job id.

Snapshots are immutable; every change builds a new snapshot and installs it
with a compare-and-swap against the one it was derived from.  The clock is
injectable so tests can move time without sleeping.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from mantis_backend.domain import (
    Completed,
    Failed,
    Idle,
    JobKind,
    JobProgress,
    JobSnapshot,
    Running,
)


Clock = Callable[[], datetime]


class JobNotFoundError(KeyError):
    """Raised when a job id is unknown to the registry."""


class JobConflictError(RuntimeError):
    """Raised when a single-flight job is triggered while one is running."""


class InvalidTransitionError(RuntimeError):
    """Raised when a terminal job is asked to progress again."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRegistry:
    def __init__(self, *, clock: Clock = _utcnow, retention_seconds: float = 3600.0) -> None:
        self._clock = clock
        self._retention = timedelta(seconds=retention_seconds)
        self._jobs: dict[str, JobSnapshot] = {}

    def _now(self) -> str:
        return self._clock().isoformat()

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def get(self, job_id: str) -> JobSnapshot | None:
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> JobSnapshot:
        snapshot = self._jobs.get(job_id)
        if snapshot is None:
            raise JobNotFoundError(job_id)
        return snapshot

    def latest(self, kind: JobKind) -> JobSnapshot | None:
        for snapshot in reversed(list(self._jobs.values())):
            if snapshot.kind == kind:
                return snapshot
        return None

    def running(self, kind: JobKind) -> JobSnapshot | None:
        for snapshot in self._jobs.values():
            if snapshot.kind == kind and snapshot.is_running:
                return snapshot
        return None

    def __len__(self) -> int:
        return len(self._jobs)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(
        self,
        job_id: str,
        kind: JobKind,
        *,
        domain: str | None = None,
        step: str = "",
        single_flight: bool = False,
    ) -> JobSnapshot:
        if single_flight and self.running(kind) is not None:
            raise JobConflictError(f"A {kind} job is already running")
        self.evict_expired()
        snapshot = JobSnapshot(
            job_id=job_id,
            kind=kind,
            state=Running(progress=JobProgress(step=step)),
            started_at=self._now(),
            domain=domain,
        )
        self._jobs[job_id] = snapshot
        return snapshot

    def compare_and_swap(self, job_id: str, expected: JobSnapshot, new: JobSnapshot) -> bool:
        if self._jobs.get(job_id) is not expected:
            return False
        self._jobs[job_id] = new
        return True

    def update(self, job_id: str, transform: Callable[[JobSnapshot], JobSnapshot]) -> JobSnapshot:
        while True:
            current = self.require(job_id)
            candidate = transform(current)
            if self.compare_and_swap(job_id, current, candidate):
                return candidate

    def _running_progress(self, snapshot: JobSnapshot) -> JobProgress:
        if not isinstance(snapshot.state, Running):
            raise InvalidTransitionError(f"job {snapshot.job_id} is {snapshot.state.status}")
        return snapshot.state.progress

    def set_progress(self, job_id: str, **changes: Any) -> JobSnapshot:
        def transform(snapshot: JobSnapshot) -> JobSnapshot:
            progress = replace(self._running_progress(snapshot), last_update=self._now(), **changes)
            return replace(snapshot, state=Running(progress=progress))

        return self.update(job_id, transform)

    def advance(
        self,
        job_id: str,
        *,
        succeeded: bool | None = None,
        step: str | Callable[[JobProgress], str] | None = None,
        result: dict[str, Any] | None = None,
    ) -> JobSnapshot:
        """Record one processed item, optionally tallying its outcome.

        ``step`` may be a callable receiving the advanced progress, for step
        strings that quote the new counters.
        """

        def transform(snapshot: JobSnapshot) -> JobSnapshot:
            progress = self._running_progress(snapshot)
            progress = replace(
                progress,
                current=progress.current + 1,
                success=progress.success + (1 if succeeded is True else 0),
                failed=progress.failed + (1 if succeeded is False else 0),
                last_update=self._now(),
            )
            if callable(step):
                progress = replace(progress, step=step(progress))
            elif step is not None:
                progress = replace(progress, step=step)
            results = snapshot.results if result is None else snapshot.results + (result,)
            return replace(snapshot, state=Running(progress=progress), results=results)

        return self.update(job_id, transform)

    def mark_done(
        self,
        job_id: str,
        *,
        summary: dict[str, Any] | None = None,
        step: str | None = None,
    ) -> JobSnapshot:
        def transform(snapshot: JobSnapshot) -> JobSnapshot:
            progress = self._running_progress(snapshot)
            if step is not None:
                progress = replace(progress, step=step)
            state = Completed(progress=progress, finished_at=self._now(), summary=dict(summary or {}))
            return replace(snapshot, state=state)

        return self.update(job_id, transform)

    def mark_failed(self, job_id: str, error: str, *, step: str | None = None) -> JobSnapshot:
        def transform(snapshot: JobSnapshot) -> JobSnapshot:
            progress = self._running_progress(snapshot)
            if step is not None:
                progress = replace(progress, step=step)
            return replace(snapshot, state=Failed(progress=progress, error=error, finished_at=self._now()))

        return self.update(job_id, transform)

    def remove(self, job_id: str) -> JobSnapshot | None:
        return self._jobs.pop(job_id, None)

    def evict_expired(self) -> int:
        """Drop finished jobs older than the retention window.

        The most recent refresh job is always kept.
        """

        cutoff = self._clock() - self._retention
        latest_refresh = self.latest("refresh")
        expired = [
            job_id
            for job_id, snapshot in self._jobs.items()
            if snapshot is not latest_refresh
            and isinstance(snapshot.state, (Completed, Failed))
            and datetime.fromisoformat(snapshot.state.finished_at) < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)

    def clear(self) -> None:
        self._jobs.clear()


def status_payload(snapshot: JobSnapshot | None) -> dict[str, Any]:
    """Serialise a snapshot into the status document polled by the UI."""

    if snapshot is None:
        state = Idle()
        return _payload(state.status, state.progress, started_at=None, error=None)
    state = snapshot.state
    error = state.error if isinstance(state, Failed) else None
    return _payload(state.status, state.progress, started_at=snapshot.started_at, error=error)


def _payload(status: str, progress: JobProgress, *, started_at: str | None, error: str | None) -> dict[str, Any]:
    return {
        "status": status,
        "progress": progress.percent,
        "current": progress.current,
        "total": progress.total,
        "success": progress.success,
        "failed": progress.failed,
        "step": progress.step,
        "startTime": started_at,
        "lastUpdate": progress.last_update,
        "error": error,
    }
