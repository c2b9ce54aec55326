"""Priority extraction from a Mantis issue page.

The business priority lives in a custom field whose rendering changed
across Mantis versions and themes.  Each strategy below looks at the page
differently; they are tried in order and the first match wins:

1. a table row whose first cell is the label ``Priorité``;
2. any cell carrying that label, reading its next sibling;
3. any cell whose whole text is a ``P1``..``P9`` token;
4. the first standalone ``P1``..``P9`` token anywhere in the body.

Extraction is best effort.  A page without a recognisable value yields an
empty priority with the ``not_found`` reason.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from bs4 import BeautifulSoup, Tag

from mantis_backend.core.schema import PriorityReason


PRIORITY_LABELS = {"priorité", "priorite"}
LEADING_PRIORITY = re.compile(r"^(P[1-9])")
EXACT_PRIORITY = re.compile(r"^(P[1-9])$")
STANDALONE_PRIORITY = re.compile(r"\b(P[1-9])\b")


@dataclass(frozen=True, slots=True)
class PriorityMatch:
    value: str
    reason: PriorityReason


NOT_FOUND = PriorityMatch(value="", reason="not_found")

Strategy = Callable[[BeautifulSoup], "PriorityMatch | None"]


def _text(node: Tag) -> str:
    return node.get_text().strip()


def _is_label(node: Tag) -> bool:
    return _text(node).lower() in PRIORITY_LABELS


def match_exact_label_row(soup: BeautifulSoup) -> PriorityMatch | None:
    for row in soup.find_all("tr"):
        cells = row.find_all(["th", "td"])
        if len(cells) < 2 or not _is_label(cells[0]):
            continue
        match = LEADING_PRIORITY.match(_text(cells[1]))
        if match:
            return PriorityMatch(match.group(1), "match_custom_field_exact_label")
    return None


def match_flexible_label(soup: BeautifulSoup) -> PriorityMatch | None:
    for cell in soup.find_all(["th", "td"]):
        if not _is_label(cell):
            continue
        sibling = cell.find_next_sibling()
        if sibling is None:
            continue
        match = LEADING_PRIORITY.match(_text(sibling))
        if match:
            return PriorityMatch(match.group(1), "match_flexible_label")
    return None


def match_direct_cell(soup: BeautifulSoup) -> PriorityMatch | None:
    for cell in soup.select(".bug-custom-field, td"):
        match = EXACT_PRIORITY.match(_text(cell))
        if match:
            return PriorityMatch(match.group(1), "match_direct_cell_pattern")
    return None


def match_global_pattern(soup: BeautifulSoup) -> PriorityMatch | None:
    body = soup.body or soup
    match = STANDALONE_PRIORITY.search(body.get_text(" "))
    if match:
        return PriorityMatch(match.group(1), "fallback_global_pattern")
    return None


STRATEGIES: tuple[Strategy, ...] = (
    match_exact_label_row,
    match_flexible_label,
    match_direct_cell,
    match_global_pattern,
)


def extract_priority(html: str) -> PriorityMatch:
    soup = BeautifulSoup(html, "html.parser")
    for strategy in STRATEGIES:
        found = strategy(soup)
        if found is not None:
            return found
    return NOT_FOUND
