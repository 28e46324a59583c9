"""Logging setup shared by the API, the CLI and the scan pipeline."""

import logging
import sys

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# httpx logs every Gemini request line at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "PIL")


def setup_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger.

    Calling this more than once keeps the first handler; unknown level
    names fall back to INFO. Chatty client libraries never log below
    WARNING.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    root = logging.getLogger()
    if root.handlers:
        return

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a module, usually called with ``__name__``."""
    return logging.getLogger(name)
