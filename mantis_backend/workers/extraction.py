"""Full-detail extraction for every cached ticket of one domain."""
from __future__ import annotations

import logging
import uuid
from typing import Any

from mantis_backend.application import CacheMissingError, MantisService, get_mantis_service
from mantis_backend.application.enrichment import fetch_full_issue_details
from mantis_backend.extractors.csv_rows import filter_by_domain, strip_leading_zeros, ticket_identifier
from mantis_backend.infrastructure import MantisSession
from mantis_backend.workers.chunks import run_in_chunks


logger = logging.getLogger(__name__)

EXTRACTION_CONCURRENCY = 3


class NoTicketsForDomainError(LookupError):
    """Raised when the cached dataset holds no ticket for the requested domain."""


class ExtractionWorker:
    def __init__(self, service: MantisService | None = None) -> None:
        self._service = service

    @property
    def service(self) -> MantisService:
        return self._service or get_mantis_service()

    def trigger(self, domain: str) -> str:
        safe_domain = "".join(ch if ch.isalnum() else "_" for ch in domain.strip())
        job_id = f"extract-{safe_domain}-{uuid.uuid4().hex[:12]}"
        self.service.registry.start(job_id, "extraction", domain=domain.strip(), step="Initialising...")
        return job_id

    async def run(self, job_id: str, domain: str) -> None:
        service = self.service
        registry = service.registry
        session = service.new_session(job_id)
        try:
            document = service.read_dataset()
            if document is None:
                raise CacheMissingError("Mantis cache not available. Run a Mantis refresh first.")
            issues = filter_by_domain(document.data, domain)
            if not issues:
                raise NoTicketsForDomainError(f"No ticket found for domain {domain}")
            registry.set_progress(job_id, total=len(issues), step="Authenticating...")

            await service.login(session)
            await run_in_chunks(
                issues,
                EXTRACTION_CONCURRENCY,
                lambda issue: self._extract_issue(session, job_id, issue),
            )
        except Exception as exc:
            logger.error("[%s] Extraction failed: %s", job_id, exc)
            registry.mark_failed(job_id, str(exc), step=f"Error: {exc}")
        else:
            extracted = len(registry.require(job_id).results)
            registry.mark_done(job_id, summary={"extracted": extracted}, step="Extraction finished")
            logger.info("[%s] Extracted %d/%d tickets", job_id, extracted, len(issues))
        finally:
            await session.aclose()

    async def _extract_issue(self, session: MantisSession, job_id: str, issue: dict[str, Any]) -> None:
        identifier = ticket_identifier(issue)
        details = None
        if identifier:
            details = await fetch_full_issue_details(session, strip_leading_zeros(identifier))
        result = {**issue, "full_details": details.model_dump()} if details is not None else None
        self.service.registry.advance(
            job_id,
            succeeded=details is not None,
            step=lambda progress: f"Extracting #{identifier} ({progress.current}/{progress.total})",
            result=result,
        )


_worker: ExtractionWorker | None = None


def get_extraction_worker() -> ExtractionWorker:
    global _worker
    if _worker is None:
        _worker = ExtractionWorker()
    return _worker
