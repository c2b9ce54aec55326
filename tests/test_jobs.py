from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fake_mantis import BASE_URL, FakeMantis, build_csv, no_sleep

from mantis_backend.application import (
    JobConflictError,
    JobRegistry,
    MantisService,
    PriorityCache,
    PriorityEnricher,
)
from mantis_backend.application.jobs import InvalidTransitionError, status_payload
from mantis_backend.core.cache_store import read_cache, write_cache_atomic
from mantis_backend.core.schema import CacheSummary
from mantis_backend.core.settings import ConfigurationError, MantisSettings
from mantis_backend.domain import Completed, Failed, Running
from mantis_backend.workers.chunks import run_in_chunks
from mantis_backend.workers.extraction import ExtractionWorker
from mantis_backend.workers.refresh import RefreshWorker


class SteppingClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _settings(tmp_path: Path, **overrides) -> MantisSettings:
    values = {
        "base_url": BASE_URL,
        "username": "alice",
        "password": "secret",
        "cache_file": tmp_path / "cache.json",
    }
    values.update(overrides)
    return MantisSettings(**values)


def _service(tmp_path: Path, fake: FakeMantis, **overrides) -> MantisService:
    return MantisService(_settings(tmp_path, **overrides), transport=fake.transport(), sleep=no_sleep)


# ----------------------------------------------------------------------
# registry
# ----------------------------------------------------------------------
def test_registry_lifecycle_replaces_snapshots():
    registry = JobRegistry(clock=SteppingClock())
    first = registry.start("job-1", "refresh", step="Initialising...")
    assert isinstance(first.state, Running)

    registry.set_progress("job-1", total=2)
    registry.advance("job-1", succeeded=True)
    advanced = registry.advance("job-1", succeeded=False, step=lambda p: f"{p.current}/{p.total}")

    assert first.state.progress.current == 0
    assert advanced.state.progress.current == 2
    assert advanced.state.progress.step == "2/2"

    done = registry.mark_done("job-1", summary={"rows": 2})
    assert isinstance(done.state, Completed)
    payload = status_payload(done)
    assert payload["status"] == "completed"
    assert payload["progress"] == 100.0
    assert (payload["success"], payload["failed"]) == (1, 1)
    assert payload["error"] is None

    with pytest.raises(InvalidTransitionError):
        registry.advance("job-1", succeeded=True)


def test_registry_failed_state_carries_error_only_when_failed():
    registry = JobRegistry()
    registry.start("job-2", "extraction")
    failed = registry.mark_failed("job-2", "Auth failed", step="Error: Auth failed")
    assert isinstance(failed.state, Failed)
    assert status_payload(failed)["error"] == "Auth failed"
    assert status_payload(None)["status"] == "idle"


def test_compare_and_swap_rejects_stale_snapshot():
    registry = JobRegistry()
    stale = registry.start("job-3", "refresh")
    registry.advance("job-3")
    assert registry.compare_and_swap("job-3", stale, stale) is False


def test_single_flight_rejects_without_touching_running_job():
    registry = JobRegistry()
    registry.start("job-a", "refresh", single_flight=True)
    registry.set_progress("job-a", total=10)
    registry.advance("job-a", succeeded=True)

    with pytest.raises(JobConflictError):
        registry.start("job-b", "refresh", single_flight=True)

    current = registry.require("job-a").state.progress
    assert (current.current, current.total, current.success) == (1, 10, 1)
    assert registry.get("job-b") is None


def test_terminal_jobs_are_evicted_after_retention():
    clock = SteppingClock()
    registry = JobRegistry(clock=clock, retention_seconds=60)
    registry.start("old", "extraction")
    registry.mark_done("old")
    registry.start("live", "extraction")

    clock.now += timedelta(seconds=61)
    assert registry.evict_expired() == 1
    assert registry.get("old") is None
    assert registry.get("live") is not None


def test_latest_refresh_outcome_survives_eviction():
    clock = SteppingClock()
    registry = JobRegistry(clock=clock, retention_seconds=60)
    registry.start("job-0", "refresh")
    registry.mark_done("job-0")
    registry.start("job-1", "refresh")
    registry.mark_failed("job-1", "Auth failed")

    clock.now += timedelta(hours=2)
    registry.start("extract-x", "extraction")

    assert registry.get("job-0") is None
    payload = status_payload(registry.latest("refresh"))
    assert payload["status"] == "failed"
    assert payload["error"] == "Auth failed"


def test_service_keeps_injected_empty_registry(tmp_path):
    registry = JobRegistry(clock=SteppingClock())
    assert len(registry) == 0
    service = MantisService(_settings(tmp_path), registry=registry)
    assert service.registry is registry

    registry.start("job-1", "refresh")
    registry.mark_failed("job-1", "Export returned HTML")
    assert service.refresh_status()["status"] == "failed"


def test_enricher_keeps_injected_empty_cache():
    cache = PriorityCache()
    assert PriorityEnricher(cache).cache is cache


# ----------------------------------------------------------------------
# chunking
# ----------------------------------------------------------------------
def test_run_in_chunks_bounds_in_flight_work():
    in_flight = 0
    peak = 0
    started: list[int] = []

    async def work(item: int) -> None:
        nonlocal in_flight, peak
        started.append(item)
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001 * (5 - item % 5))
        in_flight -= 1

    asyncio.run(run_in_chunks(list(range(12)), 5, work))

    assert peak == 5
    assert sorted(started[:5]) == [0, 1, 2, 3, 4]
    assert sorted(started[5:10]) == [5, 6, 7, 8, 9]
    assert sorted(started) == list(range(12))


# ----------------------------------------------------------------------
# refresh worker
# ----------------------------------------------------------------------
def test_refresh_job_enriches_all_rows_and_writes_cache(tmp_path):
    fake = FakeMantis(csv_payload=build_csv(12), page_delay=0.001, failing_ids={"4"})
    service = _service(tmp_path, fake, enrich_concurrency=5)
    worker = RefreshWorker(service)

    job_id = worker.trigger()
    asyncio.run(worker.run(job_id))

    snapshot = service.registry.require(job_id)
    assert isinstance(snapshot.state, Completed)
    progress = snapshot.state.progress
    assert progress.total == 12
    assert progress.current == 12
    assert progress.success + progress.failed == 12
    assert progress.failed == 1
    assert fake.max_in_flight <= 5

    document = read_cache(tmp_path / "cache.json")
    assert document is not None
    assert len(document.data) == 12
    assert document.data[0]["Identifiant"] == "0000001"
    assert document.data[0]["priority"] == "P2"
    assert document.data[3]["priority"] == "ERR"
    assert document.summary.enriched.total == 12
    assert "4" in fake.view_requests()


def test_refresh_counts_rows_without_identifier_as_success(tmp_path):
    fake = FakeMantis(csv_payload="Identifiant,Résumé\n0000001,a\n,sans id\n")
    service = _service(tmp_path, fake)
    worker = RefreshWorker(service)

    job_id = worker.trigger()
    asyncio.run(worker.run(job_id))

    progress = service.registry.require(job_id).state.progress
    assert (progress.current, progress.success, progress.failed) == (2, 2, 0)
    assert fake.view_requests() == ["1"]


def test_refresh_fails_on_html_export_and_keeps_previous_cache(tmp_path):
    cache_file = tmp_path / "cache.json"
    write_cache_atomic(cache_file, [{"Identifiant": "9"}], CacheSummary(totalRows=1))
    fake = FakeMantis(csv_payload="<html><body>Session expired</body></html>")
    service = _service(tmp_path, fake)
    worker = RefreshWorker(service)

    job_id = worker.trigger()
    asyncio.run(worker.run(job_id))

    snapshot = service.registry.require(job_id)
    assert isinstance(snapshot.state, Failed)
    assert snapshot.state.error == "Export returned HTML"
    assert service.registry.running("refresh") is None
    assert read_cache(cache_file).data == [{"Identifiant": "9"}]


def test_refresh_fails_on_rejected_login(tmp_path):
    fake = FakeMantis(reject_login=True)
    service = _service(tmp_path, fake)
    worker = RefreshWorker(service)

    job_id = worker.trigger()
    asyncio.run(worker.run(job_id))

    state = service.registry.require(job_id).state
    assert isinstance(state, Failed)
    assert "Auth failed" in state.error
    assert not (tmp_path / "cache.json").exists()


def test_refresh_trigger_requires_credentials(tmp_path):
    service = _service(tmp_path, FakeMantis(), password="")
    with pytest.raises(ConfigurationError, match="MANTIS_PASSWORD"):
        RefreshWorker(service).trigger()


def test_second_trigger_while_running_is_rejected(tmp_path):
    service = _service(tmp_path, FakeMantis())
    worker = RefreshWorker(service)
    first = worker.trigger()
    service.registry.set_progress(first, total=5)

    with pytest.raises(JobConflictError):
        worker.trigger()
    assert service.registry.require(first).state.progress.total == 5


# ----------------------------------------------------------------------
# extraction worker
# ----------------------------------------------------------------------
DETAIL_PAGE = """
<table><tr><td class="category">Description</td><td>Broken export</td></tr></table>
<div class="bugnote"><div class="bugnote-author">jdoe</div>
<span class="bugnote-date">2024-01-01</span><div class="bugnote-text">Looking</div></div>
"""


def _seed_cache(tmp_path: Path) -> None:
    rows = [
        {"Identifiant": f"{index:07d}", "Domaine (Toray)": "FIN" if index % 2 else "RH"}
        for index in range(1, 8)
    ]
    write_cache_atomic(tmp_path / "cache.json", rows, CacheSummary(totalRows=len(rows)))


def test_extraction_job_collects_details_for_domain(tmp_path):
    _seed_cache(tmp_path)
    fake = FakeMantis(pages={str(i): DETAIL_PAGE for i in range(1, 8)}, failing_ids={"5"}, page_delay=0.001)
    service = _service(tmp_path, fake)
    worker = ExtractionWorker(service)

    job_id = worker.trigger("fin")
    asyncio.run(worker.run(job_id, "fin"))

    snapshot = service.registry.require(job_id)
    assert isinstance(snapshot.state, Completed)
    assert snapshot.state.progress.total == 4
    assert snapshot.state.progress.current == 4
    assert snapshot.state.progress.step == "Extraction finished"
    assert fake.max_in_flight <= 3
    ids = sorted(row["Identifiant"] for row in snapshot.results)
    assert ids == ["0000001", "0000003", "0000007"]
    first = snapshot.results[0]
    assert first["full_details"]["description"] == "Broken export"
    assert first["full_details"]["notes"][0]["author"] == "jdoe"

    domain, rows = service.take_extraction_result(job_id)
    assert domain == "fin"
    assert len(rows) == 3
    assert service.registry.get(job_id) is None


def test_extraction_fails_fast_without_cache(tmp_path):
    fake = FakeMantis()
    service = _service(tmp_path, fake)
    worker = ExtractionWorker(service)

    job_id = worker.trigger("FIN")
    asyncio.run(worker.run(job_id, "FIN"))

    state = service.registry.require(job_id).state
    assert isinstance(state, Failed)
    assert "cache" in state.error.lower()
    assert state.progress.step.startswith("Error: ")
    assert fake.requests == []


def test_extraction_fails_when_domain_has_no_ticket(tmp_path):
    _seed_cache(tmp_path)
    service = _service(tmp_path, FakeMantis())
    worker = ExtractionWorker(service)

    job_id = worker.trigger("OPS")
    asyncio.run(worker.run(job_id, "OPS"))

    state = service.registry.require(job_id).state
    assert isinstance(state, Failed)
    assert state.error == "No ticket found for domain OPS"
