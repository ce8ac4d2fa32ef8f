"""Logging configuration for the reconciliation API and CLI.

Provides dual output (stdout + file) with configurable level via LOG_LEVEL env var.
Default: INFO. Set LOG_LEVEL=WARNING for production, DEBUG for verbose output.

The log file is the audit trail of a run:
    INFO     run start and size, saved runs, bulk job summaries
    WARNING  corrected readings with original and replacement values,
             fetch retries, meters missing from a parent's sum,
             kWh left unpriced by a tariff
    ERROR    meters whose fetch exhausted its retries, failed bulk periods
    DEBUG    per-stage progress events

Database driver loggers stay at WARNING unless LOG_LEVEL is DEBUG, since
paged reading fetches would otherwise flood the file.
"""

import logging
import os
import sys
from pathlib import Path

# Chatty per-statement loggers of the async database stack
DATABASE_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite")

# Map string level names to logging constants
LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_log_level(default: str = "INFO") -> int:
    """Get logging level from LOG_LEVEL environment variable.

    Returns:
        Logging level constant (default: INFO)
    """
    level_str = os.getenv("LOG_LEVEL", default).upper()
    return LOG_LEVEL_MAP.get(level_str, logging.INFO)


def setup_server_logging(log_file: str = "logs/reconciliation.log", level: str = "INFO") -> None:
    """
    Configure root logger for the API server and CLI.

    Args:
        log_file: Path to log file (default: logs/reconciliation.log)
        level: Fallback level name when LOG_LEVEL is not set

    Behavior:
        - Sets up all loggers to output to both stdout and file
        - ISO format timestamps for consistency
        - Database driver loggers held at WARNING outside DEBUG
    """
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # ISO format: [YYYY-MM-DD HH:MM:SS]
    formatter = logging.Formatter(
        fmt="[%(asctime)s] %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_level = get_log_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove any existing handlers to avoid duplicates
    root_logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(log_level)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    driver_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in DATABASE_LOGGERS:
        logging.getLogger(name).setLevel(driver_level)
