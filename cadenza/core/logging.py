# cadenza/core/logging.py
"""
Component loggers for the supervisor, its workers and their work processes.

Every line carries the pid because one terminal usually shows the autoscaler
and several workers at once. Color is used only when stdout is a terminal and
``NO_COLOR`` is unset.
"""

import logging
import os
import sys
from datetime import datetime
from typing import Iterator, Optional, TextIO

ROOT = 'cadenza'

# Level for loggers created from now on; apply_level() also updates existing ones.
_default_level: int = logging.INFO

_RESET = '\033[0m'
_TIME = '\033[94m'
_TEXT = '\033[97m'
_LEVEL_STYLES = {
    'DEBUG': '\033[90m',
    'INFO': '\033[92m',
    'WARNING': '\033[93m',
    'ERROR': '\033[91m',
    'CRITICAL': '\033[1;91m',
}


def _wants_color(stream: TextIO) -> bool:
    if os.environ.get('NO_COLOR'):
        return False
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


class ColoredFormatter(logging.Formatter):
    """``[time pid] [component] [LEVEL] message``, aligned in columns."""

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, style: str) -> str:
        return f'{style}{text}{_RESET}' if self.use_color else text

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        # 'cadenza.autoscaler' -> 'autoscaler'
        component = record.name.rpartition('.')[2]
        line = ' '.join(
            (
                self._paint(f'[{stamp} {record.process}]', _TIME),
                self._paint(f'[{component}]'.ljust(14), _TEXT),
                self._paint(
                    f'[{record.levelname}]'.ljust(10),
                    _LEVEL_STYLES.get(record.levelname, _TEXT),
                ),
                self._paint(record.getMessage(), _TEXT),
            )
        )
        if record.exc_info:
            line += '\n' + self.formatException(record.exc_info)
        return line


def _make_handler(level: int, stream: Optional[TextIO] = None) -> logging.Handler:
    stream = stream or sys.stdout
    handler = logging.StreamHandler(stream)
    handler.setFormatter(ColoredFormatter(use_color=_wants_color(stream)))
    handler.setLevel(level)
    return handler


def _cadenza_loggers() -> Iterator[logging.Logger]:
    yield logging.getLogger(ROOT)
    for name in list(logging.Logger.manager.loggerDict):
        if isinstance(name, str) and name.startswith(f'{ROOT}.'):
            yield logging.getLogger(name)


def set_default_level(level: int) -> None:
    """Set the level for loggers created after this call."""
    global _default_level
    _default_level = level


def apply_level(level: int) -> None:
    """Change the level everywhere: new loggers, existing loggers and their handlers."""
    set_default_level(level)
    for lgr in _cadenza_loggers():
        lgr.setLevel(level)
        for handler in lgr.handlers:
            handler.setLevel(level)


def get_logger(component_name: str) -> logging.Logger:
    """Logger for one component, e.g. ``get_logger('queue')`` -> ``cadenza.queue``."""
    logger = logging.getLogger(f'{ROOT}.{component_name}')
    if not logger.handlers:
        logger.addHandler(_make_handler(_default_level))
        logger.setLevel(_default_level)
        logger.propagate = False
    return logger
