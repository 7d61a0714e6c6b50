"""Structured logging utilities."""

import logging

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", fmt: str | None = None) -> None:
    """Setup logging for server and client entry points.

    The root logger is only configured once; an existing configuration
    (e.g. pytest's log capture) only has its level adjusted.

    Args:
        level: Logging level name
        fmt: Optional log record format
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        root.setLevel(numeric_level)
        return

    logging.basicConfig(level=numeric_level, format=fmt or DEFAULT_FORMAT)
