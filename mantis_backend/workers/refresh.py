"""Bulk refresh of the cached ticket dataset.

The job logs in, downloads the saved-filter CSV export, scrapes the priority
of every ticket in fixed-size chunks and finally replaces the cache file in
one atomic write.  Only one refresh may run at a time.
"""
from __future__ import annotations

import logging
import time
import uuid

from mantis_backend.application import MantisService, get_mantis_service
from mantis_backend.application.enrichment import ERROR_SENTINEL
from mantis_backend.core.cache_store import write_cache_atomic
from mantis_backend.core.schema import CacheSummary, EnrichmentCounters
from mantis_backend.extractors.csv_rows import (
    PRIORITY_FIELD,
    parse_csv_rows,
    strip_leading_zeros,
    ticket_identifier,
)
from mantis_backend.infrastructure import MantisSession, export_csv
from mantis_backend.workers.chunks import run_in_chunks


logger = logging.getLogger(__name__)


class RefreshWorker:
    def __init__(self, service: MantisService | None = None) -> None:
        self._service = service

    @property
    def service(self) -> MantisService:
        return self._service or get_mantis_service()

    def trigger(self) -> str:
        """Register a new refresh job and return its id.

        Raises :class:`ConfigurationError` when credentials are missing and
        :class:`JobConflictError` while another refresh is running; in both
        cases the running job is left untouched.
        """

        self.service.settings.require_credentials()
        job_id = f"job-{uuid.uuid4().hex[:12]}"
        self.service.registry.start(job_id, "refresh", step="Initialising...", single_flight=True)
        return job_id

    async def run(self, job_id: str) -> None:
        service = self.service
        registry = service.registry
        started = time.monotonic()
        session = service.new_session(job_id)
        try:
            await service.login(session)
            registry.set_progress(job_id, step="Exporting CSV")
            rows = parse_csv_rows(await export_csv(session, service.settings.source_query_id))

            registry.set_progress(job_id, total=len(rows), step="Enriching priorities")
            await run_in_chunks(
                rows,
                service.settings.enrich_concurrency,
                lambda row: self._enrich_row(session, job_id, row),
            )

            progress = registry.require(job_id).state.progress
            summary = CacheSummary(
                totalRows=len(rows),
                enriched=EnrichmentCounters(
                    total=progress.current,
                    success=progress.success,
                    failed=progress.failed,
                ),
            )
            write_cache_atomic(service.settings.cache_file, rows, summary)
        except Exception as exc:
            logger.error("[%s] Refresh failed: %s", job_id, exc)
            registry.mark_failed(job_id, str(exc), step=f"Error: {exc}")
        else:
            registry.mark_done(job_id, summary=summary.model_dump(), step="Refresh finished")
            logger.info("[%s] Refresh finished in %.1fs", job_id, time.monotonic() - started)
        finally:
            await session.aclose()

    async def _enrich_row(self, session: MantisSession, job_id: str, row: dict) -> None:
        registry = self.service.registry
        identifier = ticket_identifier(row)
        if not identifier:
            registry.advance(job_id, succeeded=True)
            return
        try:
            value = await self.service.enricher.fetch_priority(session, strip_leading_zeros(identifier))
        except Exception as exc:
            session.log.error("Enrichment failed for #%s: %s", identifier, exc)
            value = ERROR_SENTINEL
        row[PRIORITY_FIELD] = value
        registry.advance(job_id, succeeded=bool(value) and value != ERROR_SENTINEL)


_worker: RefreshWorker | None = None


def get_refresh_worker() -> RefreshWorker:
    global _worker
    if _worker is None:
        _worker = RefreshWorker()
    return _worker
