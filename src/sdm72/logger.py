"""
Logging configuration.

Console logging on stderr through the standard library; stdout carries
command output only.
"""

import logging
import sys


def setup_logging(log_level: str = "INFO") -> None:
    """
    Initialize logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )
    # pymodbus logs every frame at DEBUG
    if log_level.upper() != "DEBUG":
        logging.getLogger("pymodbus").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
