from __future__ import annotations

import logging
import sys

from notifyflow.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if not any(getattr(handler, "_notifyflow", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._notifyflow = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # Keep third-party chatter below application logs.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, root.level))
    logging.getLogger("arq").setLevel(max(logging.INFO, root.level))
