from __future__ import annotations

import logging
import threading

from .config import LOG_LEVEL

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False
_configure_lock = threading.Lock()


def _configure_root() -> None:
    global _configured

    if _configured:
        return
    with _configure_lock:
        if _configured:
            return
        root = logging.getLogger()
        if not root.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(_FORMAT))
            root.addHandler(handler)
        level = logging.getLevelName(str(LOG_LEVEL or "INFO").upper())
        root.setLevel(level if isinstance(level, int) else logging.INFO)
        _configured = True


def get_logger(name: str) -> logging.Logger:
    _configure_root()
    return logging.getLogger(name)
