"""Package-wide logging helpers."""

from __future__ import annotations

import logging
import os
from typing import Optional

_ENV_LOG_LEVEL = "DETMKS_LOG_LEVEL"
_DEFAULT_LEVEL = "WARNING"


def _level_from_env() -> int:
    raw = os.getenv(_ENV_LOG_LEVEL, _DEFAULT_LEVEL).strip().upper()
    level = logging.getLevelName(raw)
    if not isinstance(level, int):
        raise ValueError(f"Invalid {_ENV_LOG_LEVEL} value '{raw}'")
    return level


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a ``detmks`` logger whose level follows ``DETMKS_LOG_LEVEL``."""

    logger_name = "detmks" if name is None else f"detmks.{name}"
    logger = logging.getLogger(logger_name)
    logger.setLevel(_level_from_env())
    return logger
