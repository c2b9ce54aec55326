from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_QUERY_ID = "1291"
DEFAULT_ENRICH_CONCURRENCY = 5
DEFAULT_EXTRACT_JOB_TTL = 3600.0
DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing."""


def _default_cache_file() -> Path:
    return Path(__file__).resolve().parents[2] / "data" / "mantis_all_mantis.json"


def _positive_int(value: str | None, default: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _positive_float(value: str | None, default: float) -> float:
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True, slots=True)
class MantisSettings:
    """Runtime configuration read from the process environment."""

    base_url: str = ""
    username: str = ""
    password: str = ""
    source_query_id: str = DEFAULT_QUERY_ID
    enrich_concurrency: int = DEFAULT_ENRICH_CONCURRENCY
    validation_assignee: str = ""
    cache_file: Path = _default_cache_file()
    extract_job_ttl: float = DEFAULT_EXTRACT_JOB_TTL

    @classmethod
    def from_env(cls) -> "MantisSettings":
        cache_env = os.getenv("MANTIS_CACHE_FILE")
        cache_file = Path(cache_env).expanduser().resolve() if cache_env else _default_cache_file()
        return cls(
            base_url=(os.getenv("MANTIS_BASE_URL") or "").rstrip("/"),
            username=os.getenv("MANTIS_USERNAME") or "",
            password=os.getenv("MANTIS_PASSWORD") or "",
            source_query_id=os.getenv("MANTIS_SOURCE_QUERY_ID") or DEFAULT_QUERY_ID,
            enrich_concurrency=_positive_int(
                os.getenv("MANTIS_ENRICH_CONCURRENCY"), DEFAULT_ENRICH_CONCURRENCY
            ),
            validation_assignee=(os.getenv("MANTIS_VALIDATION_ASSIGNEE") or "").strip().lower(),
            cache_file=cache_file,
            extract_job_ttl=_positive_float(os.getenv("MANTIS_EXTRACT_JOB_TTL"), DEFAULT_EXTRACT_JOB_TTL),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.username and self.password)

    def require_credentials(self) -> None:
        missing = [
            name
            for name, value in (
                ("MANTIS_BASE_URL", self.base_url),
                ("MANTIS_USERNAME", self.username),
                ("MANTIS_PASSWORD", self.password),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")


def cors_origins() -> list[str]:
    origins_env = os.getenv("API_CORS_ORIGINS", "")
    origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
    return origins or list(DEFAULT_CORS_ORIGINS)
