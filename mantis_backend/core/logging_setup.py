from __future__ import annotations

import logging
import os
from typing import Any, MutableMapping


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | None = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


class RequestLogger(logging.LoggerAdapter):
    """Prefix every record with the correlation id of the owning request or job."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['rid']}] {msg}", kwargs


def request_logger(name: str, rid: str | None) -> RequestLogger:
    return RequestLogger(logging.getLogger(name), {"rid": rid or "SYS"})
