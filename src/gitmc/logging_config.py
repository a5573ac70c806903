"""Logging configuration for GitMC.

Every CLI invocation appends to one rotating log file in the data
directory. Console output is opt-in (``--debug``) and goes to stderr, since
stdout carries command results.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_MAX_BYTES = 1024 * 1024
LOG_BACKUPS = 3

# Libraries whose warnings belong in our log file
THIRD_PARTY_LOGGERS = ("dulwich", "tenacity")


def setup_logging(debug: bool = False, log_dir: Path | None = None) -> logging.Logger:
    """Configure application-wide logging.

    Args:
        debug: If True, also log to stderr at DEBUG level
        log_dir: Directory for gitmc.log; defaults to ~/.gitmc

    Returns:
        The "gitmc" logger
    """
    from .config.paths import AppPaths  # config imports this module

    log_dir = log_dir or AppPaths.CONFIG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("gitmc")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    file_handler = RotatingFileHandler(
        log_dir / AppPaths.LOG_FILE.name,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)

    if debug:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter("%(levelname)s - %(name)s - %(message)s"))
        logger.addHandler(console_handler)

    for name in THIRD_PARTY_LOGGERS:
        library = logging.getLogger(name)
        library.setLevel(logging.DEBUG if debug else logging.WARNING)
        library.handlers = [file_handler]
        library.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger for a specific module.

    Args:
        name: Module name (e.g., 'nbt_codec', 'git_orchestrator')

    Returns:
        The "gitmc.<name>" logger
    """
    return logging.getLogger(f"gitmc.{name}")
