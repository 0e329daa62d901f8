# dosewatch/core/logging.py
import logging
import os
import sys
from datetime import datetime, timezone
from typing import TextIO

_ROOT = 'dosewatch'

# Level for loggers created from now on; set_default_level() also re-levels existing ones
_default_level: int = logging.INFO

_RESET = '\033[0m'
_TIME_COLOR = '\033[94m'
_COMPONENT_COLOR = '\033[97m'
_LEVEL_COLORS = {
    'DEBUG': '\033[90m',
    'INFO': '\033[92m',
    'WARNING': '\033[93m',
    'ERROR': '\033[91m',
    'CRITICAL': '\033[1;91m',
}


def colors_enabled(stream: TextIO) -> bool:
    """
    Whether ANSI colors should be written to `stream`.

    DOSEWATCH_FORCE_COLOR wins, then NO_COLOR (https://no-color.org/),
    then the stream's own isatty().
    """
    if os.environ.get('DOSEWATCH_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(stream, 'isatty') and stream.isatty()


class ComponentFormatter(logging.Formatter):
    """
    One line per record: UTC time, component, level, message.

    Fire times are UTC throughout dosewatch, so log timestamps are too and
    can be compared with `next_fire_at` values directly.
    """

    COMPONENT_WIDTH = 14  # '[recipients]' plus two
    LEVEL_WIDTH = 10

    def __init__(self, use_colors: bool = False):
        super().__init__()
        self.use_colors = use_colors

    def _paint(self, color: str, text: str) -> str:
        return f'{color}{text}{_RESET}' if self.use_colors else text

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            '%Y-%m-%d %H:%M:%SZ'
        )
        # 'dosewatch.cycle' -> 'cycle'
        component = record.name.rsplit('.', 1)[-1]
        level_color = _LEVEL_COLORS.get(record.levelname, _COMPONENT_COLOR)

        line = (
            self._paint(_TIME_COLOR, f'[{stamp}]')
            + ' '
            + self._paint(_COMPONENT_COLOR, f'[{component}]'.ljust(self.COMPONENT_WIDTH))
            + self._paint(level_color, f'[{record.levelname}]'.ljust(self.LEVEL_WIDTH))
            + record.getMessage()
        )
        if record.exc_info:
            line += '\n' + self.formatException(record.exc_info)
        return line


def set_default_level(level: int) -> None:
    """Set the level for new dosewatch loggers and every one already created."""
    global _default_level
    _default_level = level

    for name, existing in list(logging.Logger.manager.loggerDict.items()):
        if not isinstance(existing, logging.Logger):
            continue
        if name == _ROOT or name.startswith(f'{_ROOT}.'):
            existing.setLevel(level)
            for handler in existing.handlers:
                handler.setLevel(level)


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger = logging.getLogger(f'{_ROOT}.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ComponentFormatter(use_colors=colors_enabled(sys.stdout)))
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Handlers are per component; the root would print a second copy
        logger.propagate = False

    return logger
