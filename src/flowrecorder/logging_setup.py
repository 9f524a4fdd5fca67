from __future__ import annotations

import logging
from pathlib import Path

from .settings import CONFIG_DIR

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def build_logger(level: str = "INFO", log_dir: Path | None = None) -> logging.Logger:
    logger = logging.getLogger("flowrecorder")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if logger.handlers:
        return logger

    logger.propagate = False
    try:
        target_dir = log_dir or CONFIG_DIR
        target_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(target_dir / "flowrecorder.log", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
    except OSError:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream_handler)
    return logger
