"""Application services."""

from .enrichment import PriorityCache, PriorityEnricher, fetch_full_issue_details
from .jobs import JobConflictError, JobNotFoundError, JobRegistry
from .service import (
    CacheMissingError,
    MantisService,
    ResultNotReadyError,
    configure_mantis_service,
    get_mantis_service,
    reset_mantis_state,
)

__all__ = [
    "CacheMissingError",
    "JobConflictError",
    "JobNotFoundError",
    "JobRegistry",
    "MantisService",
    "PriorityCache",
    "PriorityEnricher",
    "ResultNotReadyError",
    "configure_mantis_service",
    "fetch_full_issue_details",
    "get_mantis_service",
    "reset_mantis_state",
]
