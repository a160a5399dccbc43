"""Application logger: one named logger writing to the console and to logs/."""

import logging
import os
import sys
from typing import Optional

import config

LOGGER_NAME = "FlowchartJudge"

_logger: Optional[logging.Logger] = None


def _file_handler(log_file: str, formatter: logging.Formatter) -> Optional[logging.Handler]:
    log_dir = os.path.dirname(log_file)
    try:
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    except OSError as e:
        print(f"Could not open log file {log_file}: {e}. Logging to console only.", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def setup_logger(level: Optional[int] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Sets up and returns the application logger.

    Safe to call more than once; handlers are only attached the first time.

    Args:
        level: Logging level. Defaults to DEBUG when GRADER_DEBUG=1, else INFO.
        log_file: Path of the log file. Defaults to config.LOG_FILE.

    Returns:
        logging.Logger: The configured application logger.
    """
    global _logger
    if _logger is not None:
        return _logger

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level if level is not None else config.LOG_LEVEL)
    logger.propagate = False

    if not logger.handlers:
        formatter = logging.Formatter(config.LOG_FORMAT)
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        file_handler = _file_handler(log_file or config.LOG_FILE, formatter)
        if file_handler is not None:
            logger.addHandler(file_handler)

    _logger = logger
    logger.debug(f"Logger initialized at level {logging.getLevelName(logger.level)}.")
    return logger


def set_level(level: int) -> None:
    """Changes the level of the application logger at runtime (e.g. for --verbose)."""
    get_logger().setLevel(level)


def get_logger() -> logging.Logger:
    """Returns the singleton logger instance, setting it up if necessary."""
    if _logger is None:
        return setup_logger()
    return _logger
