"""
Settings read from `ZIPINFO_*` environment variables, and the logging setup of the package. The
settings are read once, when this module is first imported.
"""
from __future__ import annotations

import logging
import os

from enum import IntEnum
from typing import Generic, Optional, TypeVar

_T = TypeVar('_T')


class LogLevel(IntEnum):
    """
    Log levels accepted by `ZIPINFO_VERBOSITY`. In addition to the standard levels, `DETACHED`
    silences all output; problems are then only visible as the sticky error of a session.
    """
    DETACHED = logging.CRITICAL + 100
    CRITICAL = logging.CRITICAL
    ERROR    = logging.ERROR     # noqa
    WARNING  = logging.WARNING   # noqa
    INFO     = logging.INFO      # noqa
    DEBUG    = logging.DEBUG     # noqa

    @classmethod
    def FromVerbosity(cls, verbosity: int) -> LogLevel:
        levels = (cls.WARNING, cls.INFO, cls.DEBUG)
        if verbosity < 0:
            return cls.DETACHED
        return levels[min(verbosity, len(levels) - 1)]


class ZipInfoFormatter(logging.Formatter):
    """
    Prints records as `(time) level in logger: message`, with short lowercase level names.
    """
    NAMES = {
        logging.CRITICAL : 'failure',
        logging.ERROR    : 'failure',
        logging.WARNING  : 'warning',
        logging.INFO     : 'comment',
        logging.DEBUG    : 'verbose',
    }

    def formatMessage(self, record: logging.LogRecord) -> str:
        record.custom_level_name = self.NAMES.get(record.levelno, record.levelname.lower())
        return super().formatMessage(record)


def logger(name: str) -> logging.Logger:
    """
    Obtain the logger for a zipinfo module. It writes to stderr with a
    `zipinfo.lib.environment.ZipInfoFormatter`, and its level is taken from `ZIPINFO_VERBOSITY`
    when that variable is set.
    """
    log = logging.getLogger(name)
    if not log.handlers:
        stream = logging.StreamHandler()
        stream.setFormatter(ZipInfoFormatter(
            '({asctime}) {custom_level_name} in {name}: {message}', style='{', datefmt='%H:%M:%S'))
        log.addHandler(stream)
    log.propagate = False
    if (level := environment.verbosity.value) is not None:
        log.setLevel(level)
    return log


class EnvironmentVariableSetting(Generic[_T]):
    """
    A setting backed by the environment variable `ZIPINFO_<name>`. Subclasses convert the raw
    string in `parse`; the `default` applies when the variable is unset or cannot be parsed.
    """
    default: Optional[_T] = None

    def __init__(self, name: str):
        self.key = F'ZIPINFO_{name}'
        raw = os.environ.get(self.key)
        self.value: Optional[_T] = self.default if raw is None else self.parse(raw.strip())

    def parse(self, raw: str) -> Optional[_T]:
        raise NotImplementedError


class EVBool(EnvironmentVariableSetting[bool]):
    default = False

    def parse(self, raw: str) -> bool:
        raw = raw.lower()
        if raw.isdigit():
            return bool(int(raw))
        return raw not in {'', 'no', 'off', 'false'}


class EVInt(EnvironmentVariableSetting[int]):
    default = 0

    def parse(self, raw: str) -> int:
        try:
            return int(raw, 0)
        except ValueError:
            return self.default


class EVLog(EnvironmentVariableSetting[LogLevel]):
    def parse(self, raw: str) -> Optional[LogLevel]:
        if raw.isdigit():
            return LogLevel.FromVerbosity(int(raw))
        try:
            return LogLevel[raw.upper()]
        except KeyError:
            levels = ', '.join(level.name for level in LogLevel)
            logging.getLogger(__name__).warning(
                F'ignoring unknown verbosity {raw!r}; pick from: {levels}')
            return None


class environment:
    verbosity = EVLog('VERBOSITY')
    max_read_bytes = EVInt('MAX_READ_BYTES')
    max_filename_length = EVInt('MAX_FILENAME_LENGTH')
    no_descriptor_search = EVBool('NO_DESCRIPTOR_SEARCH')
