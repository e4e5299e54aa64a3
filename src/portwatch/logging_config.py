"""Logging configuration using rich handlers."""

import logging
from logging.handlers import RotatingFileHandler

from rich.logging import RichHandler

LOG_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "none": logging.CRITICAL + 1,
}


def setup_logging(level: int | str = logging.INFO, log_file: str | None = None) -> logging.Logger:
    """
    Configure standard logging with a RichHandler and optional file output.

    Args:
        level: A logging level or one of ``info``, ``warn``, ``error``, ``none``.
        log_file: Optional path; when given a RotatingFileHandler writes plain
            text logs there as well.

    Returns:
        The ``portwatch`` package logger.
    """
    if isinstance(level, str):
        level = LOG_LEVELS[level.lower()]

    handlers: list[logging.Handler] = [RichHandler(rich_tracebacks=True, markup=False)]
    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)
    return logging.getLogger("portwatch")
