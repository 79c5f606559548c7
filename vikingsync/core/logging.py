from __future__ import annotations

import logging
import sys

from vikingsync.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Entry points configure the root logger once; library modules only create named loggers.
    settings = get_settings()
    root = logging.getLogger()
    resolved = (level or settings.log_level).upper()
    root.setLevel(resolved)
    for handler in root.handlers:
        if getattr(handler, "_vikingsync", False):
            handler.setLevel(resolved)
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.setLevel(resolved)
    handler._vikingsync = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # httpx logs every request at INFO; keep it at WARNING unless debugging.
    if resolved != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)
