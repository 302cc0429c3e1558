"""
Logging configuration for airwayseq.

This module sets up consistent logging across all pipeline services,
making it easier to follow a run stage by stage and debug issues.
"""

import logging
import os
import sys
from typing import Optional, Union

from rich.logging import RichHandler


def _resolve_level(level: Optional[int]) -> int:
    """Pick the explicit level, else AIRWAYSEQ_LOG_LEVEL, else INFO."""
    if level is not None:
        return level
    name = os.environ.get("AIRWAYSEQ_LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: setup_logging() installs a RichHandler on the root logger.
       We detect this and let logs propagate to root (single output).
    2. Direct usage: No RichHandler on root. We add our own StreamHandler
       and disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Logging level (default: AIRWAYSEQ_LOG_LEVEL or INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure if it hasn't been configured yet
    if not logger.handlers:
        logger.setLevel(_resolve_level(level))

        root_logger = logging.getLogger()
        has_rich_handler = any(
            isinstance(handler, RichHandler) for handler in root_logger.handlers
        )

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            formatter = logging.Formatter(
                "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            # Root may also have a basicConfig handler; avoid printing twice
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    Route all airwayseq logging through a Rich handler on the root logger.

    Used by the CLI. Loggers created earlier with their own StreamHandler
    are switched over so output is not duplicated.
    """
    rich_handler = RichHandler(
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
    )
    rich_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))

    root_logger = logging.getLogger()
    root_logger.handlers = [rich_handler]
    root_logger.setLevel(level)

    for logger_name, candidate in logging.root.manager.loggerDict.items():
        if not logger_name.startswith("airwayseq") or not isinstance(
            candidate, logging.Logger
        ):
            continue
        candidate.handlers = []
        candidate.propagate = True
        candidate.setLevel(level)

    # HTTP client chatter from the annotation lookup
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("numba").setLevel(logging.WARNING)
