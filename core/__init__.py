"""Core utilities shared by the simulator and the CLI."""

from .logging_setup import get_logger, setup_logging, teardown_logging
from .numeric import DEFAULT_DIGITS, DEFAULT_PRECISION, format_value, sign

__all__ = [
    "setup_logging",
    "teardown_logging",
    "get_logger",
    "DEFAULT_PRECISION",
    "DEFAULT_DIGITS",
    "format_value",
    "sign",
]
