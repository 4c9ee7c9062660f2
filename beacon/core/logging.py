from __future__ import annotations

import logging

from beacon.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Keep a single root handler so scripts and workers share one log format.
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT, force=True)
    # httpx logs every request at INFO; keep provider traffic out of worker logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
