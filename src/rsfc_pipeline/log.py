"""log.py — console and daily-file logging for rsfc_pipeline.

Modules log through ``logging.getLogger(__name__)``; :func:`setup_logging`
attaches two handlers to the package logger:

* a colour-coded console handler (DEBUG only when ``verbose``), and
* an append-only daily file ``<log_dir>/pipeline_<run_stamp>.log``.

Two extra levels are registered: ``SUCCESS`` for completed steps and
``DRY-RUN`` for commands that would have been executed.
"""
from __future__ import annotations

__all__ = ["SUCCESS", "DRY_RUN", "setup_logging", "daily_log_path"]

import logging
from pathlib import Path

import click

from rsfc_pipeline.config import RunConfig

SUCCESS = 25
DRY_RUN = 22

logging.addLevelName(SUCCESS, "SUCCESS")
logging.addLevelName(DRY_RUN, "DRY-RUN")

_PACKAGE_LOGGER = "rsfc_pipeline"
_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_COLOURS = {
    logging.ERROR: "red",
    logging.CRITICAL: "red",
    logging.WARNING: "yellow",
    SUCCESS: "green",
    logging.INFO: "cyan",
    DRY_RUN: "magenta",
}


class _ColourFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        colour = _COLOURS.get(record.levelno)
        return click.style(message, fg=colour) if colour else message


class _OwnedHandler:
    """Marker mixin so reconfiguration only removes our own handlers."""


class _ConsoleHandler(_OwnedHandler, logging.StreamHandler):
    pass


class _DailyFileHandler(_OwnedHandler, logging.FileHandler):
    pass


def daily_log_path(config: RunConfig) -> Path:
    """Return the path of the daily pipeline log for *config*."""
    return config.log_root / f"pipeline_{config.run_stamp}.log"


def setup_logging(config: RunConfig, *, log_to_file: bool = True) -> logging.Logger:
    """Configure the package logger from *config* and return it.

    Safe to call more than once; handlers installed by a previous call are
    replaced.
    """
    logger = logging.getLogger(_PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in list(logger.handlers):
        if isinstance(handler, _OwnedHandler):
            logger.removeHandler(handler)
            handler.close()

    console = _ConsoleHandler()
    console.setLevel(logging.DEBUG if config.verbose else logging.INFO)
    console.setFormatter(_ColourFormatter(_FORMAT, datefmt=_DATEFMT))
    logger.addHandler(console)

    if log_to_file:
        log_path = daily_log_path(config)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = _DailyFileHandler(log_path, mode="a", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
        logger.addHandler(fh)
        logger.debug("Logging to %s", log_path)

    return logger
