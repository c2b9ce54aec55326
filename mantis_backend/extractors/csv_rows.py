from __future__ import annotations

import io

import pandas as pd


ID_COLUMNS = ("Identifiant", "id")
DOMAIN_COLUMNS = ("Domaine (Toray)", "domaine")
PRIORITY_FIELD = "priority"


def parse_csv_rows(payload: str) -> list[dict[str, str]]:
    """Parse a Mantis CSV export into one ``{header: value}`` dict per ticket.

    Every value is kept as a string so identifiers keep their leading zeros.
    """

    text = payload.lstrip("\ufeff")
    if not text.strip():
        return []
    # index_col=False keeps a trailing delimiter from turning the first
    # column into the index; positional usecols drops surplus fields.
    width = len(pd.read_csv(io.StringIO(text), nrows=0, index_col=False).columns)
    frame = pd.read_csv(
        io.StringIO(text),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        index_col=False,
        usecols=list(range(width)),
    ).fillna("")
    frame = frame.rename(columns={col: str(col).strip() for col in frame.columns})
    return frame.to_dict(orient="records")


def ticket_identifier(row: dict) -> str:
    for column in ID_COLUMNS:
        value = str(row.get(column) or "").strip()
        if value:
            return value
    return ""


def strip_leading_zeros(identifier: str) -> str:
    return str(identifier).strip().lstrip("0")


def ticket_domain(row: dict) -> str:
    for column in DOMAIN_COLUMNS:
        value = str(row.get(column) or "").strip()
        if value:
            return value
    return ""


def filter_by_domain(rows: list[dict], domain: str) -> list[dict]:
    wanted = domain.strip().upper()
    return [row for row in rows if ticket_domain(row).upper() == wanted]
