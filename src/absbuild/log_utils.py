"""Logging setup for absbuild commands."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure the root logger.

    Args:
        log_file: Rotating log file location, None to skip file logging
        verbose: Also log to the console at DEBUG level
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(logger.handlers):
        if getattr(handler, "_absbuild", False):
            logger.removeHandler(handler)
            handler.close()

    # Console handler (verbose only; normal output goes through print)
    if verbose:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        console_handler._absbuild = True  # type: ignore[attr-defined]
        logger.addHandler(console_handler)
    else:
        warning_handler = logging.StreamHandler(sys.stderr)
        warning_handler.setLevel(logging.WARNING)
        warning_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        warning_handler._absbuild = True  # type: ignore[attr-defined]
        logger.addHandler(warning_handler)

    if log_file is None:
        return

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
            encoding="utf-8",
        )
    except OSError as e:
        logging.warning(f"File logging disabled, cannot open {log_file}: {e}")
        return

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler._absbuild = True  # type: ignore[attr-defined]
    logger.addHandler(file_handler)
