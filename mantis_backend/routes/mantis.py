from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query
from fastapi.responses import JSONResponse, Response

from mantis_backend.application import (
    CacheMissingError,
    JobConflictError,
    JobNotFoundError,
    ResultNotReadyError,
    get_mantis_service,
)
from mantis_backend.core.schema import JobStatusModel
from mantis_backend.core.settings import ConfigurationError
from mantis_backend.workers.extraction import get_extraction_worker
from mantis_backend.workers.refresh import get_refresh_worker

router = APIRouter(prefix="/mantis", tags=["mantis"])
logger = logging.getLogger(__name__)


def _request_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@router.get("/health")
async def health() -> dict:
    return {"ok": True, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.post("/refresh")
async def trigger_refresh(background_tasks: BackgroundTasks) -> dict:
    worker = get_refresh_worker()
    try:
        job_id = worker.trigger()
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except JobConflictError as exc:
        raise HTTPException(status_code=409, detail="Refresh already in progress") from exc
    background_tasks.add_task(worker.run, job_id)
    logger.info("[%s] Refresh started", job_id)
    return {"message": "Refresh started", "jobId": job_id}


@router.get("/refresh-status", response_model=JobStatusModel)
async def refresh_status() -> dict:
    return get_mantis_service().refresh_status()


@router.get("/status/{job_id}", response_model=JobStatusModel)
async def job_status(job_id: str) -> dict:
    try:
        return get_mantis_service().refresh_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc


@router.get("/all")
async def get_all_issues() -> dict:
    service = get_mantis_service()
    rid = _request_id("all")
    document = service.read_dataset()
    if document is None:
        raise HTTPException(status_code=404, detail="No data available. Please refresh.")
    return {
        "issues": document.data,
        "lastUpdate": document.lastUpdated,
        "summary": document.summary,
        "isFromCache": True,
        "baseUrl": service.settings.base_url,
        "requestId": rid,
    }


@router.get("/priority")
async def get_priority(id: str | None = Query(default=None)) -> dict:
    if not id or not id.strip():
        raise HTTPException(status_code=400, detail="Missing id")
    rid = _request_id(f"lazy-{id.strip()}")
    try:
        value = await get_mantis_service().refresh_priority(id.strip(), rid)
    except Exception as exc:
        logger.error("[%s] Lazy priority failed: %s", rid, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {"id": id, "priority": value, "requestId": rid}


@router.get("/kpis")
async def get_kpis() -> JSONResponse:
    started = time.monotonic()
    try:
        kpis = get_mantis_service().get_kpis()
    except CacheMissingError as exc:
        return JSONResponse(status_code=503, content={"detail": str(exc), "code": "CACHE_MISSING"})
    logger.info(
        "Computed KPIs in %.2fs: sd_en_cours=%s sd_testable=%s",
        time.monotonic() - started,
        kpis["sd_en_cours"]["total"],
        kpis["sd_testable"]["total"],
    )
    return JSONResponse(content=kpis)


@router.post("/extract-full")
async def trigger_extraction(payload: dict, background_tasks: BackgroundTasks) -> dict:
    domain = str(payload.get("domain") or "").strip()
    if not domain:
        raise HTTPException(status_code=400, detail="domain is required")
    worker = get_extraction_worker()
    job_id = worker.trigger(domain)
    background_tasks.add_task(worker.run, job_id, domain)
    return {"jobId": job_id}


@router.get("/extract-status/{job_id}")
async def extraction_status(job_id: str) -> dict:
    try:
        status = get_mantis_service().extraction_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return {key: status[key] for key in ("status", "progress", "step", "error", "current", "total")}


@router.get("/extract-download/{job_id}")
async def download_extraction(job_id: str) -> Response:
    try:
        domain, rows = get_mantis_service().take_extraction_result(job_id)
    except ResultNotReadyError as exc:
        raise HTTPException(status_code=404, detail="Result not ready or job not found") from exc
    safe_domain = "".join(ch if ch.isalnum() else "_" for ch in domain) or "domain"
    filename = f"mantis_extract_{safe_domain}_{int(time.time() * 1000)}.json"
    return Response(
        content=json.dumps(rows, ensure_ascii=False, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
