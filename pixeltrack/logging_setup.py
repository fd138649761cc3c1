"""
Logging configuration for the ingestion server.

Usage:
    from pixeltrack.logging_setup import setup_logging

    setup_logging(log_level="DEBUG", log_file="./logs/pixeltrack.log")

Modules log through ``logging.getLogger(__name__)`` and prefix messages with
their component, e.g. ``[ingest]`` or ``[tracker]``.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
) -> None:
    """
    Configure the root logger: console always, rotating file when ``log_file`` is set.

    Args:
        log_level: Minimum level to log (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. None means console only.
        max_bytes: Max size per log file before rotation (default 5 MB).
        backup_count: Number of rotated log files to keep.
    """
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # re-init must not stack handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path),
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for noisy in ("urllib3", "sqlalchemy.engine", "multipart"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
