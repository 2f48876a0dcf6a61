"""Centralized logging configuration."""

import sys
from pathlib import Path
from typing import TextIO

from loguru import logger

log_format = " | ".join(
    (
        "<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>",
        "<lvl>{level:<8}</>",
        "<c>{name}::{function}:{line}</>",
        "{message}",
    )
)


def configure_logging(level: str = "INFO", log_dir: str | Path | None = None, stream: TextIO = sys.stdout) -> None:
    logger.remove()
    logger.add(stream, format=log_format, level=level)

    if log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        logger.add(
            f"{log_dir}/{{time:YYYY-MM-DD}}.log",
            format=log_format,
            level=level,
            rotation="1 day",
            retention="30 days",
            compression="zip",
            enqueue=True,
        )
