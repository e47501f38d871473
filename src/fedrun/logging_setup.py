"""Logging configuration and last-resort exception handlers."""

import sys
import logging
from typing import Optional

from fedrun.schemas import InternalConfig
from fedrun.setup_directories import get_log_path

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(config: InternalConfig, dirs: Optional[dict] = None):
    """Configure the root logger with console and (optionally) file handlers.

    Parameters
    ----------
    config : InternalConfig
        Resolved runtime config; ``config.logging.level`` sets the level.
    dirs : dict, optional
        Directories from setup_app_directories(). When given, a log file is
        written under ``logs/``.

    Returns
    -------
    Path or None
        The log file path, if a file handler was added.
    """
    log_level = getattr(logging, config.logging.level, logging.INFO)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    # Clear existing handlers and add new ones
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    log_path = None
    if dirs is not None:
        log_path = get_log_path(dirs, config.user_id)
        fh = logging.FileHandler(log_path)
        fh.setLevel(log_level)
        fh.setFormatter(formatter)
        root.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    ch.setFormatter(formatter)
    root.addHandler(ch)

    logger.info("Logging: level=%s, file=%s", config.logging.level, log_path)
    return log_path


def _log_uncaught(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


def _log_loop_exception(loop, context):
    exc = context.get("exception")
    message = context.get("message", "Unhandled error in event loop")
    if exc is not None:
        logger.error("%s", message, exc_info=(type(exc), exc, exc.__traceback__))
    else:
        logger.error("%s", message)


def install_exception_handlers(loop=None):
    """Log anything that escapes to the interpreter or the event loop.

    Parameters
    ----------
    loop : asyncio.AbstractEventLoop, optional
        Loop whose exception handler is replaced. When None only
        ``sys.excepthook`` is installed.
    """
    sys.excepthook = _log_uncaught
    if loop is not None:
        loop.set_exception_handler(_log_loop_exception)
