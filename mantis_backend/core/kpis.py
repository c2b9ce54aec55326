"""Dashboard KPIs computed over the cached ticket rows.

Column labels are those of the French Mantis CSV export.  The ``RDD``
domain is excluded from every global metric; the ``sd_*`` breakdowns look
at service-desk tickets (category or domain ``SD``) only.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Iterable

import pandas as pd

from mantis_backend.extractors.csv_rows import PRIORITY_FIELD


STATUS_COLUMNS = ("État", "Etat")
DOMAIN_COLUMNS = ("Domaine (Toray)",)
CATEGORY_COLUMNS = ("Catégorie",)
ASSIGNEE_COLUMNS = ("Affecté à",)
SUBMITTED_COLUMNS = ("Date de soumission",)
UPDATED_COLUMNS = ("Mis à jour",)

OPEN_STATUSES = {"nouveau", "accepté", "chiffrage", "validation chiffrage", "réalisation", "résolu"}
CLOSED_STATUSES = {"fermé", "clos", "validé", "suspendu", "annulé"}
VALIDATED_STATUSES = {"fermé", "validé", "suspendu", "annulé"}
RESOLVED_STATUS = "résolu"
EXCLUDED_DOMAIN = "RDD"
SERVICE_DESK = "SD"
HISTORY_MONTHS = 12


def _text_column(frame: pd.DataFrame, names: Iterable[str]) -> pd.Series:
    result = pd.Series([""] * len(frame), index=frame.index, dtype=object)
    for name in names:
        if name not in frame.columns:
            continue
        values = frame[name].fillna("").astype(str).str.strip()
        result = result.where(result != "", values)
    return result


def _date_column(frame: pd.DataFrame, names: Iterable[str]) -> pd.Series:
    raw = _text_column(frame, names)
    return pd.to_datetime(raw.where(raw != "", None), errors="coerce", format="mixed")


def prepare_frame(rows: list[dict]) -> pd.DataFrame:
    frame = pd.DataFrame(rows)
    return pd.DataFrame(
        {
            "status": _text_column(frame, STATUS_COLUMNS).str.lower(),
            "domain": _text_column(frame, DOMAIN_COLUMNS),
            "category": _text_column(frame, CATEGORY_COLUMNS),
            "assignee": _text_column(frame, ASSIGNEE_COLUMNS).str.lower(),
            "priority": _text_column(frame, (PRIORITY_FIELD,)).str.upper(),
            "submitted": _date_column(frame, SUBMITTED_COLUMNS),
            "updated": _date_column(frame, UPDATED_COLUMNS),
        },
        index=frame.index,
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _ceil_days(delta: pd.Series) -> pd.Series:
    return (delta.dt.total_seconds() / 86400).apply(math.ceil)


def priority_breakdown(frame: pd.DataFrame) -> dict[str, int]:
    counts = {p.lower(): int((frame["priority"] == p).sum()) for p in ("P1", "P2", "P3")}
    total = len(frame)
    return {"total": total, **counts, "non_prio": total - sum(counts.values())}


def _week_start(dates: pd.Series) -> pd.Series:
    monday = dates.dt.normalize() - pd.to_timedelta(dates.dt.weekday, unit="D")
    return monday.dt.strftime("%Y-%m-%d")


def _month_start(dates: pd.Series) -> pd.Series:
    return dates.dt.strftime("%Y-%m-01")


def _evolution(frame: pd.DataFrame, bucket, limit: pd.Timestamp) -> list[dict[str, Any]]:
    created = bucket(frame["submitted"]).dropna()
    created = created[pd.to_datetime(created) >= limit]
    buckets: dict[str, dict[str, Any]] = {
        label: {"label": label, "created": int(count), "validated": 0}
        for label, count in created.value_counts().items()
    }
    validated = frame[frame["status"].isin(VALIDATED_STATUSES)]
    for label in bucket(validated["updated"]).dropna():
        if label in buckets:
            buckets[label]["validated"] += 1
    return [buckets[label] for label in sorted(buckets)]


def _period_end(label: str, period: str) -> pd.Timestamp:
    start = pd.Timestamp(label)
    if period == "monthly":
        return start + pd.offsets.MonthEnd(0) + pd.Timedelta(hours=23, minutes=59, seconds=59)
    return start + pd.Timedelta(days=6, hours=23, minutes=59, seconds=59)


def _backlog_history(frame: pd.DataFrame, labels: list[str], period: str) -> list[dict[str, Any]]:
    is_validated = frame["status"].isin(VALIDATED_STATUSES)
    history: list[dict[str, Any]] = []
    for label in labels:
        end = _period_end(label, period)
        submitted = frame["submitted"].notna() & (frame["submitted"] <= end)
        still_open = ~is_validated | (frame["updated"] > end)
        history.append({"label": label, "value": int((submitted & still_open).sum())})
    return history


def _distribution(domains: pd.Series) -> list[dict[str, Any]]:
    counts = domains.where(domains != "", "N/A").value_counts(sort=False)
    items = [{"name": str(name), "value": int(value)} for name, value in counts.items()]
    return sorted(items, key=lambda item: item["value"], reverse=True)


def _mean_age(frame: pd.DataFrame, now: pd.Timestamp) -> int:
    dated = frame["submitted"].dropna()
    if dated.empty:
        return 0
    days = _ceil_days((now - dated).abs())
    return _round_half_up(float(days.mean()))


def _mean_resolution(frame: pd.DataFrame) -> int:
    dated = frame[frame["submitted"].notna() & frame["updated"].notna()]
    if dated.empty:
        return 0
    delta = (dated["updated"] - dated["submitted"]).clip(lower=pd.Timedelta(0))
    return _round_half_up(float(_ceil_days(delta).mean()))


def compute_kpis(
    rows: list[dict],
    *,
    validation_assignee: str = "",
    now: datetime | None = None,
) -> dict[str, Any]:
    """Return the KPI document rendered by the dashboard."""

    today = pd.Timestamp(now or datetime.now())
    if today.tzinfo is not None:
        today = today.tz_convert(None)
    frame = prepare_frame(rows)

    assignee = validation_assignee.strip().lower()
    is_sd = (frame["category"] == SERVICE_DESK) | (frame["domain"] == SERVICE_DESK)
    is_open = frame["status"].isin(OPEN_STATUSES)
    if assignee:
        is_validator = frame["assignee"] == assignee
    else:
        is_validator = pd.Series(False, index=frame.index)

    sd_en_cours = frame[is_sd & is_open & ~is_validator]
    sd_testable = frame[is_sd & (frame["status"] == RESOLVED_STATUS) & is_validator]

    scope = frame[frame["domain"] != EXCLUDED_DOMAIN]
    scope_open = scope[scope["status"].isin(OPEN_STATUSES)]
    scope_closed = scope[scope["status"].isin(CLOSED_STATUSES)]

    limit = today - pd.DateOffset(months=HISTORY_MONTHS)
    weekly = _evolution(scope, _week_start, limit)
    monthly = _evolution(scope, _month_start, limit)

    not_validated = scope[~scope["status"].isin(VALIDATED_STATUSES)]

    return {
        "sd_en_cours": priority_breakdown(sd_en_cours),
        "sd_testable": priority_breakdown(sd_testable),
        "global": {
            "evolution": {"weekly": weekly, "monthly": monthly},
            "domaines": _distribution(scope["domain"]),
            "backlog": {
                "total": len(scope_open),
                "priorite": priority_breakdown(scope_open),
                "age_moyen": _mean_age(scope_open, today),
            },
            "backlog_history": {
                "weekly": _backlog_history(scope, [item["label"] for item in weekly], "weekly"),
                "monthly": _backlog_history(scope, [item["label"] for item in monthly], "monthly"),
            },
            "open_by_domain": _distribution(not_validated["domain"]),
            "resolution": {"global": _mean_resolution(scope_closed)},
        },
    }
