"""Per-ticket scraping services used by the background jobs."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from mantis_backend.core.schema import IssueDetails, PriorityReason
from mantis_backend.extractors.issue_details import parse_issue_details
from mantis_backend.extractors.priority import extract_priority
from mantis_backend.infrastructure import MantisSession


FOUND_TTL = 30 * 60.0
NOT_FOUND_TTL = 5 * 60.0
ERROR_SENTINEL = "ERR"


def issue_url(issue_id: str) -> str:
    return f"/view.php?id={issue_id}"


@dataclass(frozen=True, slots=True)
class PriorityCacheEntry:
    value: str
    reason: PriorityReason
    timestamp: float


class PriorityCache:
    """In-memory priority cache keyed by numeric ticket id.

    A found value lives for ``found_ttl`` seconds; an empty value only for
    ``not_found_ttl`` so that a transient scrape miss is retried soon.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        found_ttl: float = FOUND_TTL,
        not_found_ttl: float = NOT_FOUND_TTL,
    ) -> None:
        self._clock = clock
        self._found_ttl = found_ttl
        self._not_found_ttl = not_found_ttl
        self._entries: dict[str, PriorityCacheEntry] = {}

    def get(self, issue_id: str) -> PriorityCacheEntry | None:
        entry = self._entries.get(issue_id)
        if entry is None:
            return None
        ttl = self._found_ttl if entry.value else self._not_found_ttl
        if self._clock() - entry.timestamp < ttl:
            return entry
        return None

    def put(self, issue_id: str, value: str, reason: PriorityReason) -> PriorityCacheEntry:
        entry = PriorityCacheEntry(value=value, reason=reason, timestamp=self._clock())
        self._entries[issue_id] = entry
        return entry

    def invalidate(self, issue_id: str) -> None:
        self._entries.pop(issue_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, issue_id: object) -> bool:
        return issue_id in self._entries


class PriorityEnricher:
    def __init__(self, cache: PriorityCache | None = None) -> None:
        self.cache = cache if cache is not None else PriorityCache()

    async def fetch_priority(self, session: MantisSession, issue_id: str) -> str:
        """Return the ``P1``..``P9`` label of a ticket, ``""`` or ``"ERR"``.

        Fetch failures are not cached so the next call retries immediately.
        """

        cached = self.cache.get(issue_id)
        if cached is not None:
            return cached.value

        try:
            response = await session.request("GET", issue_url(issue_id))
            match = extract_priority(response.text)
        except Exception as exc:
            session.log.error("Priority scrape failed for #%s: %s", issue_id, exc)
            return ERROR_SENTINEL

        self.cache.put(issue_id, match.value, match.reason)
        session.log.debug("Priority for #%s: %r (%s)", issue_id, match.value, match.reason)
        return match.value


async def fetch_full_issue_details(session: MantisSession, issue_id: str) -> IssueDetails | None:
    """Scrape description, notes and attachments; ``None`` on any failure."""

    try:
        response = await session.request("GET", issue_url(issue_id))
        return parse_issue_details(response.text, issue_id)
    except Exception as exc:
        session.log.error("Full detail scrape failed for #%s: %s", issue_id, exc)
        return None
