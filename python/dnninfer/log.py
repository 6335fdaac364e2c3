# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import inspect
import logging
import os
import sys

from .error import *
from .error import __all__ as error_all

__all__ = [*error_all, "DEBUG", "INFO", "WARN", "ERROR"]

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

_logger = logging.getLogger("dnninfer")


def _setup_logger():
    if _logger.handlers:
        return
    level_name = os.environ.get("DNNINFER_LOG_LEVEL", "WARN").upper()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("DNNINFER %(levelname)s %(message)s"))
    _logger.addHandler(handler)
    _logger.setLevel(_LOG_LEVELS.get(level_name, logging.WARNING))
    _logger.propagate = False


def log(level: int, filename: str, lineno: int, msg: str) -> None:
    _setup_logger()
    _logger.log(level, "%s:%d %s", os.path.basename(filename), lineno, msg)


def DEBUG(msg: str) -> None:
    frame = inspect.currentframe().f_back
    info = inspect.getframeinfo(frame)
    log(logging.DEBUG, info.filename, info.lineno, msg)


def INFO(msg: str) -> None:
    frame = inspect.currentframe().f_back
    info = inspect.getframeinfo(frame)
    log(logging.INFO, info.filename, info.lineno, msg)


def WARN(msg: str) -> None:
    frame = inspect.currentframe().f_back
    info = inspect.getframeinfo(frame)
    log(logging.WARNING, info.filename, info.lineno, msg)


def ERROR(msg: str) -> None:
    frame = inspect.currentframe().f_back
    info = inspect.getframeinfo(frame)
    log(logging.ERROR, info.filename, info.lineno, msg)
