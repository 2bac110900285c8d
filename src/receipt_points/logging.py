"""Package-wide logging setup.

Handlers are attached once to the ``receipt_points`` logger; module loggers
are its children and propagate to it, so LOG_LEVEL and LOG_FILE apply to the
whole tracker no matter which module logs first.
"""

import logging
import os
from typing import Optional

ROOT_LOGGER = "receipt_points"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s | %(message)s"
DATE_FORMAT = "%H:%M:%S"


def level_from_env(value: Optional[str]) -> int:
    """Translate a LOG_LEVEL value (name or number) into a logging level."""
    text = (value or "").strip().upper()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else logging.INFO


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers:
        return root

    root.setLevel(level_from_env(os.environ.get("LOG_LEVEL")))
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    handlers = [logging.StreamHandler()]
    log_file = os.environ.get("LOG_FILE")
    broken_file = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as exc:
            broken_file = exc
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.propagate = False
    if broken_file is not None:
        root.warning(f"LOG_FILE {log_file!r} unusable ({broken_file}); logging to stderr only")
    return root


def get_logger(name: str) -> logging.Logger:
    """Return the ``receipt_points.<name>`` logger, configuring the package logger on first use."""
    _configure_root()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
