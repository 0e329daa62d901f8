"""Unit tests for CLI locator parsing, app discovery and command handlers."""

from __future__ import annotations

import argparse
import os
import textwrap
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dosewatch.core.app import Dosewatch
from dosewatch.core.cli import (
    _parse_data_pairs,
    _parse_locator,
    _resolve_module_argument,
    build_parser,
    check_command,
    discover_app,
    tick_command,
)
from dosewatch.core.errors import ConfigurationError, ErrorCode
from dosewatch.core.scheduler.cycle import CycleReport, OutcomeKind, ScheduleOutcome

pytestmark = pytest.mark.unit


APP_SOURCE = textwrap.dedent(
    """
    from dosewatch import AppConfig, Dosewatch, PostgresConfig

    config = AppConfig(store=PostgresConfig(database_url='postgresql+psycopg://u:p@localhost/db'))
    {body}
    """
)


def _write_app(tmp_path: Path, name: str, body: str) -> Path:
    path = tmp_path / f'{name}.py'
    path.write_text(APP_SOURCE.format(body=body))
    return path


@pytest.fixture
def in_tmp_cwd(tmp_path: Path) -> Iterator[Path]:
    """Run with cwd set to a directory that is not a project root."""
    original = os.getcwd()
    os.chdir(tmp_path)
    try:
        yield tmp_path
    finally:
        os.chdir(original)


# =============================================================================
# Argument helpers
# =============================================================================


class TestLocatorParsing:
    """Tests for _parse_locator and _resolve_module_argument."""

    def test_dotted_with_attribute(self) -> None:
        assert _parse_locator('app.reminders:app') == ('app.reminders', 'app')

    def test_file_without_attribute(self) -> None:
        assert _parse_locator('app/reminders.py') == ('app/reminders.py', None)

    def test_flag_wins_over_positional(self) -> None:
        args = argparse.Namespace(module='a.b:app', module_pos='c.d:app')
        assert _resolve_module_argument(args) == 'a.b:app'

    def test_missing_module(self) -> None:
        args = argparse.Namespace(module=None, module_pos=None)

        with pytest.raises(ConfigurationError) as exc_info:
            _resolve_module_argument(args)

        assert exc_info.value.code == ErrorCode.CLI_INVALID_ARGS


class TestParseDataPairs:
    """Tests for --data KEY=VALUE parsing."""

    def test_pairs(self) -> None:
        assert _parse_data_pairs(['screen=/home', 'id=a=b']) == {'screen': '/home', 'id': 'a=b'}

    def test_empty_value_allowed(self) -> None:
        assert _parse_data_pairs(['flag=']) == {'flag': ''}

    @pytest.mark.parametrize('pair', ['novalue', '=value'])
    def test_invalid(self, pair: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            _parse_data_pairs([pair])

        assert exc_info.value.code == ErrorCode.CLI_INVALID_ARGS


class TestBuildParser:
    """Tests for the argparse command tree."""

    def test_send_test_arguments(self) -> None:
        args = build_parser().parse_args(
            [
                'send-test', 'app:app',
                '--owner-id', 'u1', '--title', 'Hi', '--body', 'Test',
                '--data', 'screen=/x', '--data', 'id=1',
            ]
        )

        assert args.command == 'send-test'
        assert args.module_pos == 'app:app'
        assert args.type == 'TEST'
        assert args.data == ['screen=/x', 'id=1']

    def test_check_defaults(self) -> None:
        args = build_parser().parse_args(['check', '-m', 'app:app'])

        assert args.loglevel == 'WARNING'
        assert args.live is False

    def test_loglevel_case_insensitive(self) -> None:
        args = build_parser().parse_args(['tick', 'app:app', '--loglevel', 'debug'])

        assert args.loglevel == 'DEBUG'


# =============================================================================
# discover_app
# =============================================================================


class TestDiscoverApp:
    """Tests for discover_app with file-path locators."""

    def test_explicit_attribute(self, in_tmp_cwd: Path) -> None:
        path = _write_app(in_tmp_cwd, 'explicit_app', 'app = Dosewatch(config)')

        app, name = discover_app(f'{path}:app')

        assert isinstance(app, Dosewatch)
        assert name == 'app'

    def test_auto_discover_single_instance(self, in_tmp_cwd: Path) -> None:
        path = _write_app(in_tmp_cwd, 'single_app', 'reminders = Dosewatch(config)')

        app, name = discover_app(str(path))

        assert isinstance(app, Dosewatch)
        assert name == 'reminders'

    def test_multiple_instances_rejected(self, in_tmp_cwd: Path) -> None:
        path = _write_app(
            in_tmp_cwd, 'double_app', 'a = Dosewatch(config)\nb = Dosewatch(config)'
        )

        with pytest.raises(ConfigurationError) as exc_info:
            discover_app(str(path))

        assert exc_info.value.code == ErrorCode.APP_INVALID_LOCATOR
        assert 'multiple' in exc_info.value.message

    def test_wrong_attribute_type(self, in_tmp_cwd: Path) -> None:
        path = _write_app(in_tmp_cwd, 'typed_app', 'app = Dosewatch(config)')

        with pytest.raises(ConfigurationError) as exc_info:
            discover_app(f'{path}:config')

        assert exc_info.value.notes == ['found AppConfig']

    def test_missing_file(self, in_tmp_cwd: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            discover_app('nowhere/missing.py:app')

        assert exc_info.value.code == ErrorCode.APP_INVALID_LOCATOR

    def test_dotted_path_with_py_suffix_hinted(self, in_tmp_cwd: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            discover_app('app.reminders.py:app')

        assert any('dotted module notation' in note for note in exc_info.value.notes)

    def test_unknown_module(self, in_tmp_cwd: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            discover_app('dosewatch_no_such_module:app')

        assert 'module not found' in exc_info.value.message


# =============================================================================
# Commands
# =============================================================================


def _report(*kinds: OutcomeKind) -> CycleReport:
    return CycleReport(
        started_at=datetime(2025, 6, 1, tzinfo=timezone.utc),
        outcomes=[ScheduleOutcome(f's{i}', kind) for i, kind in enumerate(kinds)],
    )


class TestTickCommand:
    """Tests for tick_command exit codes and output."""

    def _run(self, report: CycleReport, capsys: pytest.CaptureFixture[str]) -> tuple[int | None, str]:
        app = MagicMock()
        app.get_store.return_value = AsyncMock()
        scheduler = MagicMock()
        scheduler.run_once = AsyncMock(return_value=report)
        scheduler.stop = AsyncMock()
        args = argparse.Namespace(module='app:app', module_pos=None, loglevel='INFO')

        code: int | None = None
        with (
            patch('dosewatch.core.cli._load_app', return_value=app),
            patch('dosewatch.core.cli.ReminderScheduler', return_value=scheduler),
        ):
            try:
                tick_command(args)
            except SystemExit as e:
                code = e.code  # type: ignore[assignment]

        scheduler.stop.assert_awaited_once()
        return code, capsys.readouterr().out

    def test_all_ok(self, capsys: pytest.CaptureFixture[str]) -> None:
        code, out = self._run(_report(OutcomeKind.DISPATCHED), capsys)

        assert code is None
        assert out.strip() == 'ok: dispatched=1'

    def test_nothing_due(self, capsys: pytest.CaptureFixture[str]) -> None:
        code, out = self._run(_report(), capsys)

        assert code is None
        assert out.strip() == 'ok: nothing due'

    def test_partial_failure_exits_2(self, capsys: pytest.CaptureFixture[str]) -> None:
        code, out = self._run(_report(OutcomeKind.DISPATCHED, OutcomeKind.FAILED), capsys)

        assert code == 2
        assert out.startswith('partial:')


class TestCheckCommand:
    """Tests for check_command."""

    def _args(self) -> argparse.Namespace:
        return argparse.Namespace(module='app:app', module_pos=None, loglevel='WARNING', live=False)

    def test_ok(self, capsys: pytest.CaptureFixture[str]) -> None:
        app = MagicMock()
        app.check.return_value = []

        with patch('dosewatch.core.cli._load_app', return_value=app):
            with pytest.raises(SystemExit) as exc_info:
                check_command(self._args())

        assert exc_info.value.code == 0
        assert 'all validations passed' in capsys.readouterr().out
        app.check.assert_called_once_with(live=False)

    def test_errors_reported(self, capsys: pytest.CaptureFixture[str]) -> None:
        app = MagicMock()
        app.check.return_value = [
            ConfigurationError(message='push transport has no async send method')
        ]

        with patch('dosewatch.core.cli._load_app', return_value=app):
            with pytest.raises(SystemExit) as exc_info:
                check_command(self._args())

        assert exc_info.value.code == 1
        assert 'push transport has no async send method' in capsys.readouterr().err

    def test_multiple_errors_reported_together(self, capsys: pytest.CaptureFixture[str]) -> None:
        app = MagicMock()
        app.check.return_value = [
            ConfigurationError(message='push transport has no async send method', setting='transport'),
            ConfigurationError(message='store connectivity check failed', setting='store.database_url'),
        ]

        with patch('dosewatch.core.cli._load_app', return_value=app):
            with pytest.raises(SystemExit) as exc_info:
                check_command(self._args())

        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert 'setting: transport' in err
        assert 'setting: store.database_url' in err
        assert '2 checks failed' in err
