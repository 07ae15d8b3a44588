"""Centralized logging configuration utilities for SubCorr.

This module exposes a single function, `setup_logging`, that configures the
application-wide logging setup using `logging.config.dictConfig`.

Behavior highlights:
- Honors the `SUBCORR_LOG_LEVEL` environment variable when present.
- Accepts either numeric levels (e.g., "20") or level names (e.g., "INFO").
- Emits a concise warning to stderr and falls back to INFO on invalid values.
- Colors the level name when the terminal supports it.

Library modules never call this; only the command line entry points do.
"""

import logging
import logging.config
import os
import sys
from typing import Union

LOG_LEVEL_ENV = "SUBCORR_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def color_supported(stream=None) -> bool:
    """True when ``stream`` is a terminal and neither NO_COLOR nor TERM=dumb is set."""
    stream = stream if stream is not None else sys.stderr
    if os.getenv("NO_COLOR") is not None or os.getenv("TERM") == "dumb":
        return False
    return bool(getattr(stream, "isatty", None) and stream.isatty())


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name of each record."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[37m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, *args, use_color=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = color_supported() if use_color is None else use_color

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno)
        if not (self.use_color and color):
            return super().format(record)
        # Formatters share records with other handlers.
        plain = record.levelname
        record.levelname = f"{color}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def resolve_level(raw: Union[int, str]) -> int:
    """
    Coerce a logging level given as a number, numeric string or level name.

    Invalid values print a warning to stderr and resolve to ``logging.INFO``.
    """
    raw = str(raw).strip()
    try:
        return int(raw)
    except ValueError:
        level = getattr(logging, raw.upper(), None)
        if not isinstance(level, int):
            print(f"Warning: Invalid log level '{raw}', using INFO.", file=sys.stderr)
            level = logging.INFO
        return level


def setup_logging(
    level: Union[int, str] = logging.INFO, use_color: bool = None
) -> None:
    """Configure the root logger via dictConfig with an env-based level override.

    Parameters
    ----------
    level : int | str, optional
        Default logging level used when `SUBCORR_LOG_LEVEL` is not set.
    use_color : bool, optional
        Whether to color level names. If None (default), auto-detects based on
        terminal capabilities and the NO_COLOR / TERM environment variables.

    Notes
    -----
    Re-applying the configuration replaces the root handlers, so repeated calls
    never accumulate duplicate handlers.
    """
    eff_level = resolve_level(os.getenv(LOG_LEVEL_ENV, str(level)))

    config = {
        "version": 1,
        # Keep library loggers (pysam, numexpr, ...) working.
        "disable_existing_loggers": False,
        "formatters": {
            "colored": {
                "()": ColoredFormatter,
                "format": LOG_FORMAT,
                "datefmt": DATE_FORMAT,
                "use_color": use_color,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "colored",
                # stdout stays free for data output
                "stream": "ext://sys.stderr",
                "level": eff_level,
            }
        },
        "root": {
            "level": eff_level,
            "handlers": ["console"],
        },
    }
    logging.config.dictConfig(config)
    logging.getLogger(__name__).debug(
        f"Logging configured with level: {logging.getLevelName(eff_level)}"
    )
