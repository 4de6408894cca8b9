from __future__ import annotations

import logging
from pathlib import Path

LOGGER_NAME = "remediator"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _parse_level(level: str) -> int:
    normalized = level.strip().upper() or "INFO"
    parsed = logging.getLevelName(normalized)
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"Unsupported log level: {level}")


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Logger:
    """Attach handlers to the package logger.

    Calling this again replaces the handlers installed by a previous call,
    so repeated CLI invocations in one process do not duplicate output.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_parse_level(level))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
