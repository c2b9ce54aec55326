"""Application service layer for the Mantis dashboard."""
from __future__ import annotations

import asyncio
from typing import Any

import httpx

from mantis_backend.application.enrichment import PriorityEnricher
from mantis_backend.application.jobs import JobNotFoundError, JobRegistry, status_payload
from mantis_backend.core.cache_store import read_cache
from mantis_backend.core.kpis import compute_kpis
from mantis_backend.core.schema import CacheDocument
from mantis_backend.core.settings import MantisSettings
from mantis_backend.domain import Completed
from mantis_backend.extractors.csv_rows import strip_leading_zeros
from mantis_backend.infrastructure import MantisSession, authenticate
from mantis_backend.infrastructure.mantis import Sleep


class CacheMissingError(LookupError):
    """Raised when no refresh has produced the cache file yet."""


class ResultNotReadyError(LookupError):
    """Raised when an extraction result is requested before completion."""


class MantisService:
    """Coordinates cache reads, job status and lazy enrichment."""

    def __init__(
        self,
        settings: MantisSettings,
        *,
        registry: JobRegistry | None = None,
        enricher: PriorityEnricher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.registry = (
            registry if registry is not None else JobRegistry(retention_seconds=settings.extract_job_ttl)
        )
        self.enricher = enricher if enricher is not None else PriorityEnricher()
        self._transport = transport
        self._sleep = sleep

    # ------------------------------------------------------------------
    # remote sessions
    # ------------------------------------------------------------------
    def new_session(self, request_id: str) -> MantisSession:
        return MantisSession(
            self.settings.base_url,
            request_id,
            transport=self._transport,
            sleep=self._sleep,
        )

    async def login(self, session: MantisSession) -> None:
        self.settings.require_credentials()
        await authenticate(session, self.settings.username, self.settings.password)

    # ------------------------------------------------------------------
    # cached dataset
    # ------------------------------------------------------------------
    def read_dataset(self) -> CacheDocument | None:
        return read_cache(self.settings.cache_file)

    def require_dataset(self) -> CacheDocument:
        document = self.read_dataset()
        if document is None:
            raise CacheMissingError("Mantis cache not available. Run a Mantis refresh first.")
        return document

    def get_kpis(self) -> dict[str, Any]:
        document = self.require_dataset()
        kpis = compute_kpis(document.data, validation_assignee=self.settings.validation_assignee)
        kpis["last_sync"] = document.lastUpdated
        return kpis

    # ------------------------------------------------------------------
    # lazy enrichment
    # ------------------------------------------------------------------
    async def refresh_priority(self, issue_id: str, request_id: str) -> str:
        """Re-scrape one ticket's priority, bypassing the cache."""

        numeric_id = strip_leading_zeros(issue_id)
        async with self.new_session(request_id) as session:
            await self.login(session)
            self.enricher.cache.invalidate(numeric_id)
            return await self.enricher.fetch_priority(session, numeric_id)

    # ------------------------------------------------------------------
    # job status
    # ------------------------------------------------------------------
    def refresh_status(self, job_id: str | None = None) -> dict[str, Any]:
        if job_id is None:
            return status_payload(self.registry.latest("refresh"))
        snapshot = self.registry.get(job_id)
        if snapshot is None or snapshot.kind != "refresh":
            raise JobNotFoundError(job_id)
        return status_payload(snapshot)

    def extraction_status(self, job_id: str) -> dict[str, Any]:
        snapshot = self.registry.get(job_id)
        if snapshot is None or snapshot.kind != "extraction":
            raise JobNotFoundError(job_id)
        return status_payload(snapshot)

    def take_extraction_result(self, job_id: str) -> tuple[str, list[dict[str, Any]]]:
        """Hand over a completed extraction's rows and forget the job."""

        snapshot = self.registry.get(job_id)
        if snapshot is None or snapshot.kind != "extraction" or not isinstance(snapshot.state, Completed):
            raise ResultNotReadyError(job_id)
        self.registry.remove(job_id)
        return snapshot.domain or "", list(snapshot.results)

    def reset(self) -> None:
        self.registry.clear()
        self.enricher.cache.clear()


_service: MantisService | None = None


def configure_mantis_service(settings: MantisSettings | None = None, **kwargs: Any) -> MantisService:
    """Install the process-wide service, reading the environment by default."""

    global _service
    _service = MantisService(settings or MantisSettings.from_env(), **kwargs)
    return _service


def get_mantis_service() -> MantisService:
    """Return the singleton Mantis service for the process."""

    if _service is None:
        return configure_mantis_service()
    return _service


def reset_mantis_state() -> None:
    """Reset the in-memory job registry and priority cache (used in tests)."""

    if _service is not None:
        _service.reset()
