"""Centralized logging utilities with market-timezone timestamps."""
from __future__ import annotations

import sys
from zoneinfo import ZoneInfo

from loguru import logger

# US equity market clock
ET = ZoneInfo("America/New_York")


def configure_logging(log_file: str | None = None, level: str = "INFO", serialize: bool = False) -> None:
    """Configure loguru sinks with Eastern Time timestamps.

    Args:
        log_file: Optional file path for log output
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        serialize: Whether to serialize logs as JSON
    """
    logger.remove()

    def et_format(record):
        et_time = record["time"].astimezone(ET)
        record["extra"]["et_time"] = et_time.strftime("%Y-%m-%d %H:%M:%S")
        return record

    log_format = (
        "<green>{extra[et_time]}</green> ET | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>\n"
    )

    logger.add(
        sys.stderr,
        format=log_format,
        level=level,
        serialize=serialize,
        filter=lambda record: et_format(record) or True,
    )

    if log_file:
        logger.add(
            log_file,
            format=log_format,
            level=level,
            rotation="10 MB",
            retention="10 days",
            serialize=serialize,
            filter=lambda record: et_format(record) or True,
        )


__all__ = ["configure_logging", "logger", "ET"]
