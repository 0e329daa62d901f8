# dosewatch/core/cli.py
"""
CLI for the dosewatch scheduler, tick, send-test and check commands.

The application object is located with a module locator:
1. Dotted module path: `dosewatch scheduler app.reminders:app`
2. File path: `dosewatch scheduler app/reminders.py:app`
3. Convenience: if cwd has pyproject.toml, cwd is added to sys.path
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys

from dosewatch.core.app import Dosewatch
from dosewatch.core.errors import (
    ConfigurationError,
    DosewatchError,
    ErrorCode,
    MultipleValidationErrors,
)
from dosewatch.core.logging import get_logger
from dosewatch.core.scheduler import CycleReport, OutcomeKind, ReminderScheduler
from dosewatch.core.store.postgres import PostgresStore
from dosewatch.core.utils.db import is_retryable_connection_error
from dosewatch.core.utils.imports import import_file_path, setup_sys_path_from_cwd

SCHEMA_INIT_ATTEMPTS = 5
SCHEMA_INIT_BACKOFF_SECONDS = 2.0

LOCATOR_HELP = (
    'provide module path in one of these formats:\n'
    '  dosewatch scheduler app.reminders:app  (recommended)\n'
    '  dosewatch scheduler app/reminders.py:app  (file path)\n'
    '  dosewatch scheduler app.reminders  (auto-discover app variable)'
)


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=LOCATOR_HELP,
        )
    return module_path


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Split a module locator into (module_path, attribute_name).

    "app.reminders:app" -> ("app.reminders", "app")
    "app/reminders.py"  -> ("app/reminders.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr)
    return (locator, None)


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def _import_locator_module(module_path: str, locator: str):
    if not _is_file_path(module_path):
        try:
            return importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[str(e), f'sys.path: {sys.path[:5]}...'],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            )

    if not module_path.endswith('.py'):
        module_path += '.py'
    file_path = os.path.realpath(module_path)
    if not os.path.exists(file_path):
        stem = module_path.removesuffix('.py')
        notes = [f'file not found: {file_path}']
        if '.' in stem and '/' not in stem and os.path.sep not in stem:
            notes.append(
                f"'{module_path}' mixes dotted module notation with a .py file extension"
            )
        raise ConfigurationError(
            message=f"cannot import module locator '{locator}'",
            code=ErrorCode.APP_INVALID_LOCATOR,
            notes=notes,
            help_text=LOCATOR_HELP,
        )
    return import_file_path(file_path)


def discover_app(module_locator: str) -> tuple[Dosewatch, str]:
    """
    Import the locator's module and find the Dosewatch instance in it.

    Returns:
        (app_instance, variable_name)

    Raises:
        ConfigurationError: If the module or the instance cannot be found
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(module_locator)
    module = _import_locator_module(module_path, module_locator)
    module_name = module.__name__

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Dosewatch):
            found = 'nothing' if obj is None else type(obj).__name__
            raise ConfigurationError(
                message=f"'{attr_name}' in module '{module_name}' is not a Dosewatch instance",
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[f'found {found}'],
                help_text='point the locator at the variable holding Dosewatch(...)',
            )
        logger.info(f"Discovered dosewatch '{attr_name}' from {module_name}")
        return obj, attr_name

    candidates = [
        (getattr(module, name), name)
        for name in dir(module)
        if not name.startswith('_') and isinstance(getattr(module, name), Dosewatch)
    ]
    if len(candidates) != 1:
        names = [name for _, name in candidates]
        raise ConfigurationError(
            message=(
                f'no Dosewatch instance found in {module_name}'
                if not candidates
                else f'multiple Dosewatch instances found in {module_name}: {names}'
            ),
            code=ErrorCode.APP_INVALID_LOCATOR,
            help_text='specify the variable name: module.path:variable',
        )

    app, var_name = candidates[0]
    logger.info(f"Discovered dosewatch '{var_name}' from {module_name}")
    return app, var_name


def setup_logging(loglevel: str) -> None:
    """Configure logging level for all dosewatch loggers."""
    from dosewatch.core.logging import set_default_level

    set_default_level(getattr(logging, loglevel.upper(), logging.INFO))


def _load_app(args: argparse.Namespace) -> Dosewatch:
    """Set up logging and discover the app; exit(1) on failure."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)

    try:
        app, _var_name = discover_app(_resolve_module_argument(args))
    except DosewatchError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {e}')
        sys.exit(1)
    return app


async def _ensure_schema_with_retry(store: PostgresStore) -> None:
    """Create the schema, retrying while the database is not reachable yet."""
    logger = get_logger('cli')
    for attempt in range(1, SCHEMA_INIT_ATTEMPTS + 1):
        try:
            await store.ensure_schema_initialized()
            return
        except Exception as e:
            if attempt == SCHEMA_INIT_ATTEMPTS or not is_retryable_connection_error(e):
                raise
            delay = SCHEMA_INIT_BACKOFF_SECONDS * attempt
            logger.warning(
                f'Schema initialization failed (attempt {attempt}/{SCHEMA_INIT_ATTEMPTS}), '
                f'retrying in {delay:.0f}s: {e}'
            )
            await asyncio.sleep(delay)


def scheduler_command(args: argparse.Namespace) -> None:
    """Handle scheduler command."""
    logger = get_logger('cli')
    app = _load_app(args)
    logger.info(f'Starting scheduler with loglevel={args.loglevel}')
    app.config.log_config(logger)

    async def run_scheduler() -> None:
        await _ensure_schema_with_retry(app.get_store())
        scheduler = ReminderScheduler(app)

        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping scheduler...')
            scheduler.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        await scheduler.run_forever()

    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info('Scheduler interrupted by user')
    except Exception as e:
        logger.error(f'Scheduler failed: {e}', exc_info=True)
        sys.exit(1)


def tick_command(args: argparse.Namespace) -> None:
    """Handle tick command - run one reminder cycle and exit."""
    logger = get_logger('cli')
    app = _load_app(args)

    async def run_tick() -> CycleReport:
        await _ensure_schema_with_retry(app.get_store())
        scheduler = ReminderScheduler(app)
        try:
            return await scheduler.run_once()
        finally:
            await scheduler.stop()

    try:
        report = asyncio.run(run_tick())
    except KeyboardInterrupt:
        logger.info('Tick interrupted by user')
        return
    except Exception as e:
        logger.error(f'Tick failed: {e}')
        sys.exit(1)

    failed = report.count(OutcomeKind.FAILED)
    print(f'{"ok" if not failed else "partial"}: {report.summary()}')
    if failed:
        # Failed schedules stay due and are retried by the next tick
        sys.exit(2)


def _parse_data_pairs(pairs: list[str]) -> dict[str, str]:
    data: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key:
            raise ConfigurationError(
                message=f"invalid --data entry '{pair}'",
                code=ErrorCode.CLI_INVALID_ARGS,
                help_text='use --data key=value (repeatable)',
            )
        data[key] = value
    return data


def send_test_command(args: argparse.Namespace) -> None:
    """Handle send-test command - deliver one ad-hoc notification."""
    logger = get_logger('cli')
    app = _load_app(args)

    try:
        data = _parse_data_pairs(args.data or [])
    except DosewatchError as e:
        logger.error(str(e))
        sys.exit(1)

    async def run_send() -> None:
        await _ensure_schema_with_retry(app.get_store())
        try:
            outcome = await app.send_test_notification(
                args.owner_id, args.title, args.body, args.type, data
            )
        finally:
            await app.close()
        if outcome.record_id is None:
            print(f'{outcome.status.value}: no record written')
        else:
            print(f'{outcome.status.value}: record {outcome.record_id}')
        for result in outcome.results:
            print(f'  {result.endpoint_id}: {result.status.value}')

    try:
        asyncio.run(run_send())
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Send failed: {e}')
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Handle check command - validate app configuration without starting services."""
    app = _load_app(args)

    errors = app.check(live=args.live)
    if errors:
        if len(errors) == 1:
            print(errors[0].render(), file=sys.stderr)
        else:
            summary = MultipleValidationErrors(
                message=f'{len(errors)} checks failed', errors=list(errors)
            )
            print(summary.render(), file=sys.stderr)
        sys.exit(1)

    print('ok: all validations passed')
    sys.exit(0)


def _add_common_arguments(
    parser: argparse.ArgumentParser, default_loglevel: str = 'INFO'
) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., app.reminders:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., app.reminders:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=default_loglevel,
        type=str.upper,
        help=f'Logging level (default: {default_loglevel})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='dosewatch',
        description='Dosewatch medication reminders - scheduler and tools',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the polling scheduler
  dosewatch scheduler app.reminders:app

  # Run one cycle (external cron)
  dosewatch tick app.reminders:app

  # Deliver a test notification
  dosewatch send-test app.reminders:app --owner-id u1 --title Hi --body Test

  # Validate configuration without starting services
  dosewatch check app.reminders:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    scheduler_parser = subparsers.add_parser(
        'scheduler', help='Start the reminder scheduler loop'
    )
    _add_common_arguments(scheduler_parser)

    tick_parser = subparsers.add_parser('tick', help='Run a single reminder cycle')
    _add_common_arguments(tick_parser)

    send_parser = subparsers.add_parser(
        'send-test', help='Deliver an ad-hoc notification to one recipient'
    )
    _add_common_arguments(send_parser)
    send_parser.add_argument('--owner-id', dest='owner_id', required=True)
    send_parser.add_argument('--title', required=True)
    send_parser.add_argument('--body', required=True)
    send_parser.add_argument('--type', default='TEST')
    send_parser.add_argument(
        '--data',
        action='append',
        metavar='KEY=VALUE',
        help='Navigation data entry (repeatable)',
    )

    check_parser = subparsers.add_parser(
        'check', help='Validate app configuration without starting services'
    )
    _add_common_arguments(check_parser, default_loglevel='WARNING')
    check_parser.add_argument(
        '--live',
        action='store_true',
        default=False,
        help='Also check store connectivity (SELECT 1)',
    )

    return parser


def main() -> None:
    """Main CLI entry point."""
    try:
        parser = build_parser()
        args = parser.parse_args()

        match args.command:
            case 'scheduler':
                scheduler_command(args)
            case 'tick':
                tick_command(args)
            case 'send-test':
                send_test_command(args)
            case 'check':
                check_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
