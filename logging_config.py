import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}


def _parse_level(value, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text in _LEVELS:
        return _LEVELS[text]
    try:
        return int(text)
    except ValueError:
        return default


def setup_logging(log_level: Optional[str] = "INFO", log_file: Optional[str] = None, fmt: str = DEFAULT_FORMAT) -> None:
    """Configure root logging for the chat relay.

    Safe to call more than once: existing root handlers are replaced.
    """
    level = _parse_level(log_level, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file and log_file.strip():
        path = Path(os.path.expanduser(log_file))
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(fmt=fmt)
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)

    # redis and uvicorn are chatty at DEBUG
    logging.getLogger("redis").setLevel(max(level, logging.INFO))
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.INFO))

    logging.captureWarnings(True)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
