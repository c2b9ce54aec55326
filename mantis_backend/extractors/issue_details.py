"""Full detail extraction from a Mantis issue page.

Two page layouts are supported.  Recent themes render notes as ``.bugnote``
blocks; older ones use two-column rows flagged ``bugnote-public`` or
``bugnote-private`` with the note body in the following row.
"""
from __future__ import annotations

import re
from typing import Iterable

from bs4 import BeautifulSoup, Tag

from mantis_backend.core.schema import IssueAttachment, IssueDetails, IssueNote


DESCRIPTION_LABELS = ("description",)
STEPS_LABELS = ("reproduire", "steps to reproduce")
ADDITIONAL_INFO_LABELS = ("informations supplémentaires", "additional information")

ATTACHMENT_TABLE_HEADERS = ("Fichiers attachés", "Attached Files")
DOWNLOAD_HREF_MARKERS = ("file_download.php", "download", "plugin.php")
ACTION_CAPTIONS = {
    "[Détacher]",
    "[Supprimer]",
    "Détacher",
    "Supprimer",
    "[Detach]",
    "[Delete]",
    "Detach",
    "Delete",
}

NOTE_AUTHOR_SELECTOR = ".bugnote-note-public, .bugnote-note-private, .bugnote-author"
LEGACY_NOTE_CLASSES = {"bugnote-public", "bugnote-private"}


def _squash(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _matches(label: str, fragments: Iterable[str]) -> bool:
    return any(fragment in label for fragment in fragments)


def extract_text_fields(soup: BeautifulSoup) -> dict[str, str]:
    fields = {"description": "", "steps_to_reproduce": "", "additional_info": ""}
    for cell in soup.select("td.category"):
        label = cell.get_text().strip().lower()
        sibling = cell.find_next_sibling()
        value = sibling.get_text().strip() if sibling is not None else ""
        if _matches(label, DESCRIPTION_LABELS):
            fields["description"] = value
        elif _matches(label, STEPS_LABELS):
            fields["steps_to_reproduce"] = value
        elif _matches(label, ADDITIONAL_INFO_LABELS):
            fields["additional_info"] = value
    return fields


def _attachment_tables(soup: BeautifulSoup) -> list[Tag]:
    tables: list[Tag] = []
    by_id = soup.find(id="attachments")
    if isinstance(by_id, Tag):
        tables.append(by_id)
    for table in soup.find_all("table"):
        text = table.get_text()
        if not any(header in text for header in ATTACHMENT_TABLE_HEADERS):
            continue
        nested = table.find_all("table")
        if any(any(header in inner.get_text() for header in ATTACHMENT_TABLE_HEADERS) for inner in nested):
            continue
        if table not in tables:
            tables.append(table)
    return tables


def extract_attachments(soup: BeautifulSoup) -> list[IssueAttachment]:
    attachments: list[IssueAttachment] = []
    seen: set[tuple[str, str]] = set()
    for table in _attachment_tables(soup):
        for link in table.find_all("a"):
            href = str(link.get("href") or "")
            name = link.get_text().strip()
            if not href or not any(marker in href for marker in DOWNLOAD_HREF_MARKERS):
                continue
            if not name or name in ACTION_CAPTIONS:
                continue
            key = (name, href)
            if key in seen:
                continue
            seen.add(key)
            attachments.append(IssueAttachment(name=name, url=href))
    return attachments


def extract_notes(soup: BeautifulSoup) -> list[IssueNote]:
    notes: list[IssueNote] = []
    for block in soup.select(".bugnote"):
        text_node = block.select_one(".bugnote-text")
        text = text_node.get_text().strip() if text_node is not None else ""
        if not text:
            continue
        author_node = block.select_one(NOTE_AUTHOR_SELECTOR)
        date_node = block.select_one(".bugnote-date")
        notes.append(
            IssueNote(
                author=_squash(author_node.get_text()) if author_node is not None else "",
                date=date_node.get_text().strip() if date_node is not None else "",
                text=text,
            )
        )
    if notes:
        return notes
    return extract_legacy_notes(soup)


def extract_legacy_notes(soup: BeautifulSoup) -> list[IssueNote]:
    notes: list[IssueNote] = []
    for row in soup.select("table.width100 tr"):
        cells = row.find_all("td", recursive=False)
        if len(cells) != 2:
            continue
        if not LEGACY_NOTE_CLASSES.intersection(cells[0].get("class") or []):
            continue
        next_row = row.find_next_sibling("tr")
        if next_row is None:
            continue
        text = " ".join(cell.get_text() for cell in next_row.find_all("td")).strip()
        if text:
            notes.append(IssueNote(author=_squash(cells[0].get_text()), text=text))
    return notes


def parse_issue_details(html: str, issue_id: str) -> IssueDetails:
    soup = BeautifulSoup(html, "html.parser")
    return IssueDetails(
        id=issue_id,
        attachments=extract_attachments(soup),
        notes=extract_notes(soup),
        **extract_text_fields(soup),
    )
