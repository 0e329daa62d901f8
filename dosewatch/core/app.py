# dosewatch/core/app.py
from __future__ import annotations
import inspect
from typing import Optional
from dosewatch.core.models.app import AppConfig
from dosewatch.core.store.postgres import PostgresStore
from dosewatch.core.scheduler.state import ScheduleStateManager
from dosewatch.core.scheduler.cycle import ReminderCycle
from dosewatch.core.delivery.transport import (
    LoggingTransport,
    PushMessage,
    PushTransport,
)
from dosewatch.core.delivery.recipients import RecipientDirectory
from dosewatch.core.delivery.inbox import NotificationInbox
from dosewatch.core.delivery.fanout import DeliveryOutcome, DispatchFanout
from dosewatch.core.errors import ConfigurationError, DosewatchError, ErrorCode
from dosewatch.core.utils.url import mask_database_url
from dosewatch.core.logging import get_logger


class Dosewatch:
    """
    Medication reminder application.

    Owns the PostgreSQL store and wires the reminder pipeline together:
    state manager, recipient directory, notification inbox, fan-out and cycle.
    Collaborators are created lazily and shared for the lifetime of the app;
    `close()` releases the store.

    Example:
        app = Dosewatch(
            AppConfig(store=PostgresConfig(database_url='postgresql+psycopg://...')),
            transport=MyPushTransport(),
        )
    """

    def __init__(self, config: AppConfig, transport: Optional[PushTransport] = None):
        self.config = config
        self.logger = get_logger('app')
        self._store: Optional[PostgresStore] = None
        self._fanout: Optional[DispatchFanout] = None

        if transport is None:
            self.logger.warning(
                'No push transport configured, reminders will only be logged'
            )
            transport = LoggingTransport()
        self.transport: PushTransport = transport

    def get_store(self) -> PostgresStore:
        """Get the configured PostgreSQL store for this app"""
        try:
            if self._store is None:
                self._store = PostgresStore(self.config.store)
            return self._store
        except DosewatchError:
            raise
        except Exception as e:
            raise ValueError(f'Failed to get store: {e}')

    def get_state_manager(self) -> ScheduleStateManager:
        return ScheduleStateManager(self.get_store().session_factory)

    def get_directory(self) -> RecipientDirectory:
        return RecipientDirectory(self.get_store().session_factory)

    def get_inbox(self) -> NotificationInbox:
        return NotificationInbox(self.get_store().session_factory)

    def get_fanout(self) -> DispatchFanout:
        if self._fanout is None:
            self._fanout = DispatchFanout(
                directory=self.get_directory(),
                transport=self.transport,
                inbox=self.get_inbox(),
            )
        return self._fanout

    def build_cycle(self) -> ReminderCycle:
        return ReminderCycle(
            state=self.get_state_manager(),
            fanout=self.get_fanout(),
            config=self.config.cycle,
        )

    async def send_test_notification(
        self,
        owner_id: str,
        title: str,
        body: str,
        type: str,
        data: Optional[dict[str, str]] = None,
    ) -> DeliveryOutcome:
        """
        Deliver an ad-hoc notification to every endpoint of a recipient.

        Raises:
            ValueError: If title, body or type is empty
        """
        missing = [
            name
            for name, value in (('title', title), ('body', body), ('type', type))
            if not value or not value.strip()
        ]
        if missing:
            raise ValueError(f'Missing required fields: {", ".join(missing)}')

        message = PushMessage(title=title, body=body, type=type, data=dict(data or {}))
        outcome = await self.get_fanout().deliver(owner_id, message)
        self.logger.info(
            f"Test notification for owner '{owner_id}': {outcome.status.value}, "
            f'record {outcome.record_id or "none"}'
        )
        return outcome

    def check(self, *, live: bool = False) -> list[DosewatchError]:
        """Run startup validation and return all errors found.

        Phase 1: Config - already validated at construction (implicit pass).
        Phase 2: Transport - must expose an async `send(address, message)`.
        Phase 3 (if live): Store connectivity - SELECT 1.

        Returns:
            Empty list when everything passed.
        """
        errors: list[DosewatchError] = []
        errors.extend(self._check_transport())
        if errors:
            return errors

        if live:
            errors.extend(self._check_store_connectivity())
        return errors

    def _check_transport(self) -> list[DosewatchError]:
        send = getattr(self.transport, 'send', None)
        if send is not None and inspect.iscoroutinefunction(send):
            return []
        return [
            ConfigurationError(
                message='push transport has no async send method',
                code=ErrorCode.APP_INVALID_TRANSPORT,
                setting='transport',
                notes=[f'transport type: {type(self.transport).__name__}'],
                help_text='implement `async def send(self, address, message) -> SendStatus`',
            )
        ]

    def _check_store_connectivity(self) -> list[DosewatchError]:
        """Check store connectivity with an isolated engine.

        A short-lived store avoids binding the app's long-lived pool to the
        ephemeral event loop of asyncio.run.
        """
        import asyncio

        errors: list[DosewatchError] = []
        try:
            probe = PostgresStore(self.config.store)

            async def _test_connection() -> None:
                try:
                    await probe.ping()
                finally:
                    await probe.close_async()

            asyncio.run(_test_connection())
        except DosewatchError as exc:
            errors.append(exc)
        except Exception as exc:
            errors.append(
                ConfigurationError(
                    message='store connectivity check failed',
                    code=ErrorCode.STORE_INVALID_URL,
                    setting='store.database_url',
                    notes=[
                        f'url: {mask_database_url(self.config.store.database_url)}',
                        str(exc),
                    ],
                    help_text='check database_url in PostgresConfig',
                )
            )
        return errors

    async def close(self) -> None:
        if self._store is not None:
            await self._store.close_async()
            self._store = None
            self._fanout = None
