from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """
    Configure root logging for worker and API processes. LOG_LEVEL is used
    when no level is passed.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    handlers = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # RQ logs every job transition at INFO; keep it but drop redis-py chatter.
    logging.getLogger("redis").setLevel(logging.WARNING)
