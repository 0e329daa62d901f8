"""
Error types for dosewatch configuration and stored schedule data.

Errors render as a short labelled block:

    error[E101]: invalid recurrence params for kind 'daily-fixed-time'
      schedule: rx-7
        column: recurrence_params
       = note: hour must be between 0 and 23
       = help: ...

Configuration errors name the offending setting; schedule data errors name the
schedule row and column, because they come from stored data rather than from a
line of code an operator could edit.
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from dosewatch.core.logging import colors_enabled


class ErrorCode(str, Enum):
    """Error codes for configuration and schedule data errors.

    - E100-E199: Schedule data errors (recurrence, window)
    - E200-E299: Config/store/CLI errors
    """

    # Schedule data (E100-E199)
    UNKNOWN_RECURRENCE_KIND = 'E100'
    INVALID_RECURRENCE_PARAMS = 'E101'
    INVALID_TIMEZONE = 'E102'
    INVALID_ACTIVE_WINDOW = 'E103'
    UNKNOWN_FREQUENCY = 'E104'

    # Config/store/CLI (E200-E299)
    STORE_INVALID_URL = 'E200'
    CONFIG_INVALID_CYCLE = 'E201'
    CLI_INVALID_ARGS = 'E202'
    APP_INVALID_LOCATOR = 'E203'
    APP_INVALID_TRANSPORT = 'E204'


_STYLES = {
    'error': '\033[1;91m',
    'label': '\033[96m',
    'note': '\033[1;94m',
    'help': '\033[1;92m',
    'dim': '\033[2m',
}
_RESET = '\033[0m'


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _style(kind: str, text: str, use_colors: bool) -> str:
    return f'{_STYLES[kind]}{text}{_RESET}' if use_colors else text


@dataclass
class DosewatchError(Exception):
    """Base exception for dosewatch configuration and data errors."""

    message: str
    code: ErrorCode | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def context(self) -> list[tuple[str, str]]:
        """Labelled lines saying what the error is about."""
        return []

    def render(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = colors_enabled(sys.stderr)

        code_part = f'[{self.code.value}]' if self.code else ''
        lines = [f"{_style('error', f'error{code_part}:', use_colors)} {self.message}"]

        pairs = self.context()
        width = max((len(label) for label, _ in pairs), default=0)
        for label, value in pairs:
            lines.append(f"  {_style('label', label.rjust(width) + ':', use_colors)} {value}")

        for note in self.notes:
            first, *rest = note.split('\n')
            lines.append(f"   = {_style('note', 'note', use_colors)}: {first}")
            lines.extend(f'           {line}' for line in rest)

        if self.help_text:
            first, *rest = self.help_text.split('\n')
            lines.append(f"   = {_style('help', 'help', use_colors)}: {first}")
            lines.extend(f'           {line}' for line in rest)

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text (no ANSI colors), safe for logs and stored error columns."""
        return self.render(use_colors=False)


@dataclass
class ConfigurationError(DosewatchError):
    """Raised when app/store/cycle configuration is invalid."""

    setting: str | None = None

    def context(self) -> list[tuple[str, str]]:
        return [('setting', self.setting)] if self.setting else []


@dataclass
class ScheduleDataError(DosewatchError):
    """Raised when a persisted schedule cannot be turned into a valid schedule.

    Covers unknown recurrence kinds, missing or malformed recurrence params,
    unknown timezones and inverted active windows. The cycle deactivates the
    affected schedule instead of failing the batch.
    """

    schedule_id: str | None = None
    column: str | None = None

    def context(self) -> list[tuple[str, str]]:
        pairs: list[tuple[str, str]] = []
        if self.schedule_id:
            pairs.append(('schedule', self.schedule_id))
        if self.column:
            pairs.append(('column', self.column))
        return pairs

    def for_schedule(self, schedule_id: str) -> ScheduleDataError:
        """Attach the row id once the failing schedule is known."""
        self.schedule_id = schedule_id
        return self


@dataclass
class MultipleValidationErrors(DosewatchError):
    """Two or more independent errors found while validating one object.

    A single error is raised as its own type by raise_collected, so
    `except ConfigurationError` keeps working for the common case.
    """

    errors: list[DosewatchError] = field(default_factory=lambda: [])

    def render(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = colors_enabled(sys.stderr)
        blocks = [error.render(use_colors=use_colors) for error in self.errors]
        blocks.append(f"{_style('error', 'error:', use_colors)} {self.message}")
        return '\n\n'.join(blocks)


def raise_collected(errors: Sequence[DosewatchError]) -> None:
    """Raise nothing for no errors, the error itself for one, a wrapper for more."""
    if not errors:
        return
    if len(errors) == 1:
        raise errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {len(errors)} errors',
        errors=list(errors),
    )


_original_excepthook = sys.excepthook


def _dosewatch_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Print uncaught DosewatchErrors as labelled blocks instead of tracebacks.

    DOSEWATCH_PLAIN_ERRORS=1 restores the default hook; DOSEWATCH_VERBOSE=1
    prints the traceback after the block.
    """
    if _env_flag('DOSEWATCH_PLAIN_ERRORS') or not isinstance(exc_value, DosewatchError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    use_colors = colors_enabled(sys.stderr)
    print('\n' + exc_value.render(use_colors=use_colors), file=sys.stderr)
    if _env_flag('DOSEWATCH_VERBOSE'):
        print(_style('dim', '\nTraceback (DOSEWATCH_VERBOSE=1):', use_colors), file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    sys.excepthook = _dosewatch_excepthook


def uninstall_error_handler() -> None:
    sys.excepthook = _original_excepthook
