"""Logging configuration for the davsync command line."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

MAX_BYTES = 1024 * 1024
BACKUP_COUNT = 3


def setup_logging(
    level: str | int = logging.WARNING,
    log_file: Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the `davsync` logger.

    Rich output goes to stderr; a rotating plain-text file is added when
    log_file is given. Calling this again replaces the handlers.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.WARNING)

    logger = logging.getLogger("davsync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(rich_handler)

    if log_file is not None:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(file_handler)

    logger.propagate = False
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logger
