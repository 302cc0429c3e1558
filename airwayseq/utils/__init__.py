"""
Utilities module for airwayseq.

- Logging configuration
"""

from .logger import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
]
