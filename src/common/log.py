from __future__ import annotations

import logging
import os
from typing import Optional


ENV_LOG_LEVEL = "SATSPAY_LOG_LEVEL"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the runtime entry point.

    The level comes from the argument, else `SATSPAY_LOG_LEVEL`, else INFO.
    Unknown level names fall back to INFO.
    """
    name = (level or os.environ.get(ENV_LOG_LEVEL) or "INFO").upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=DEFAULT_FORMAT)
    logging.getLogger().setLevel(resolved)
