from __future__ import annotations

import logging
import sys

from notifypipe.core.config import get_settings


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger so API and worker output share a format.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    for handler in root.handlers:
        if getattr(handler, "_notifypipe_handler", False):
            handler.setLevel(resolved)
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.setLevel(resolved)
    setattr(handler, "_notifypipe_handler", True)
    root.addHandler(handler)
    # Keep per-request HTTP client chatter out of worker logs.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, root.level))
