from __future__ import annotations

import logging
from threading import Lock

from attachflow.core.config import get_settings

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configure_lock = Lock()
_is_configured = False


def configure_logging() -> None:
    global _is_configured
    if _is_configured:
        return

    settings = get_settings()
    with _configure_lock:
        if _is_configured:
            return
        level = logging.getLevelName(settings.log_level.strip().upper())
        if not isinstance(level, int):
            logger.warning("Unknown LOG_LEVEL %r; falling back to INFO.", settings.log_level)
            level = logging.INFO
        logging.basicConfig(level=level, format=_LOG_FORMAT)
        logging.getLogger("attachflow").setLevel(level)
        _is_configured = True
