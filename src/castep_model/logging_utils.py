"""Logging setup for castep_model."""

from __future__ import annotations

import logging

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def level_from_string(name: str | int) -> int:
    """Map a level name such as ``"debug"`` to its :mod:`logging` value.

    Integers pass through unchanged; unknown names give ``logging.INFO``.
    """
    if isinstance(name, int):
        return name
    return _LEVELS.get(str(name).strip().upper(), logging.INFO)


def configure_logging(level: int | str = logging.INFO, logger_name: str | None = None) -> None:
    """Configure the root logger or a named logger.

    Parameters
    ----------
    level:
        Level from :mod:`logging`, or its name (``"WARNING"``). Defaults to
        ``logging.INFO``.
    logger_name:
        Optional logger to configure, e.g. ``"castep_model"``. If omitted,
        the root logger is configured.

    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level_from_string(level))

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
