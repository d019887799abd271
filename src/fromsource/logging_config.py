"""Central logging configuration for the fromsource CLI."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

LOG_LEVEL_ENV = "FROMSOURCE_LOG_LEVEL"
LOG_FILE_ENV = "FROMSOURCE_LOG_FILE"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_CONFIGURED = False


def configure_logging(
    level: Union[int, str, None] = None,
    log_file: Optional[Path] = None,
    *,
    force: bool = False,
) -> None:
    """Configure the ``fromsource`` logger with a single handler.

    ``level`` falls back to ``FROMSOURCE_LOG_LEVEL`` and then to WARNING;
    ``log_file`` falls back to ``FROMSOURCE_LOG_FILE`` and then to stderr.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    resolved = _read_level(level if level is not None else os.getenv(LOG_LEVEL_ENV))
    log_path = log_file or os.getenv(LOG_FILE_ENV)

    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger("fromsource")
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.addHandler(handler)
    logger.setLevel(resolved)
    _CONFIGURED = True


def _read_level(raw: Union[int, str, None]) -> int:
    if raw is None or raw == "":
        return logging.WARNING
    if isinstance(raw, int):
        return raw
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {raw!r}")
    return level


def verbosity_to_level(verbose: int, quiet: bool = False) -> Optional[int]:
    """Map ``-v`` counts to a level; ``None`` leaves the environment default."""
    if quiet:
        return logging.ERROR
    if verbose >= 2:
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    return None
