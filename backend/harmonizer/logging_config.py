"""Logging configuration for the application."""
import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging with a timestamped stdout handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
