"""Persistence of the enriched ticket dataset.

The cache is a single JSON document ``{data, lastUpdated, summary}`` that is
replaced wholesale on every refresh.  Writers go through a sibling ``.tmp``
file followed by :func:`os.replace`, so readers either see the previous
document or the new one, never a truncated file.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mantis_backend.core.schema import CacheDocument, CacheSummary


logger = logging.getLogger(__name__)


def _temp_path(path: Path) -> Path:
    return path.with_name(path.name + ".tmp")


def read_cache(path: Path) -> CacheDocument | None:
    """Return the cached dataset, or ``None`` when absent or unreadable."""

    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return CacheDocument.model_validate(payload)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Ignoring unreadable cache file %s: %s", path, exc)
        return None


def _dump(path: Path, payload: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as fp:
        json.dump(payload, fp, ensure_ascii=False, indent=2)
        fp.flush()
        os.fsync(fp.fileno())


def write_cache_atomic(path: Path, rows: list[dict], summary: CacheSummary) -> CacheDocument:
    document = CacheDocument(
        data=rows,
        lastUpdated=datetime.now(timezone.utc).isoformat(),
        summary=summary,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = _temp_path(path)
    try:
        _dump(temp, document.model_dump(mode="json"))
    except BaseException:
        temp.unlink(missing_ok=True)
        raise
    os.replace(temp, path)
    logger.info("Wrote %d rows to %s", len(rows), path)
    return document
