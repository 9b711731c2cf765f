"""Structured logging setup using Loguru."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logger(
    log_level: str = "INFO",
    log_file: Optional[str] = "logs/docuchat.log",
    json_file: bool = False,
) -> None:
    """
    Configure loguru sinks for ingestion and query runs.

    - Console: coloured, human-readable, always on stderr so CLI JSON
      output on stdout stays parseable
    - File: rotating + compressed; one JSON record per line when
      ``json_file`` is set (for log shippers)
    """
    logger.remove()
    logger.add(sys.stderr, level=log_level, format=_CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message}",
            serialize=json_file,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
        )

    logger.debug(f"[Logger] level={log_level} | file={log_file} | json={json_file}")
