from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


PriorityReason = Literal[
    "match_custom_field_exact_label",
    "match_flexible_label",
    "match_direct_cell_pattern",
    "fallback_global_pattern",
    "not_found",
]


class IssueNote(BaseModel):
    author: str = ""
    date: str = ""
    text: str


class IssueAttachment(BaseModel):
    name: str
    url: str


class IssueDetails(BaseModel):
    id: str
    description: str = ""
    steps_to_reproduce: str = ""
    additional_info: str = ""
    notes: list[IssueNote] = Field(default_factory=list)
    attachments: list[IssueAttachment] = Field(default_factory=list)


class EnrichmentCounters(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0


class CacheSummary(BaseModel):
    totalRows: int = 0
    enriched: EnrichmentCounters = Field(default_factory=EnrichmentCounters)


class CacheDocument(BaseModel):
    data: list[dict] = Field(default_factory=list)
    lastUpdated: str | None = None
    summary: CacheSummary | None = None


class JobStatusModel(BaseModel):
    status: Literal["idle", "running", "completed", "failed"]
    progress: float = 0.0
    current: int = 0
    total: int = 0
    success: int = 0
    failed: int = 0
    step: str = ""
    startTime: str | None = None
    lastUpdate: str | None = None
    error: str | None = None
