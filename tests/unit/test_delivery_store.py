"""Tests for RecipientDirectory and NotificationInbox (mocked sessions)."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from dosewatch.core.delivery.inbox import NotificationInbox
from dosewatch.core.delivery.recipients import RecipientDirectory
from dosewatch.core.delivery.transport import PushMessage
from dosewatch.core.models.pg import NotificationRecordModel


def _make_factory() -> tuple[MagicMock, AsyncMock]:
    mock_session = AsyncMock()
    mock_session.add = MagicMock()

    mock_factory = MagicMock()
    mock_factory.return_value.__aenter__ = AsyncMock(return_value=mock_session)
    mock_factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return mock_factory, mock_session


@pytest.mark.unit
class TestRecipientDirectory:
    """Tests for endpoint listing, registration and removal."""

    @pytest.mark.asyncio
    async def test_list_endpoints(self) -> None:
        factory, session = _make_factory()
        session.execute = AsyncMock(
            return_value=[
                SimpleNamespace(endpoint_id='phone', address='tok-1'),
                SimpleNamespace(endpoint_id='tablet', address='tok-2'),
            ]
        )

        endpoints = await RecipientDirectory(factory).list_endpoints('user-1')

        assert endpoints == {'phone': 'tok-1', 'tablet': 'tok-2'}
        assert list(endpoints) == ['phone', 'tablet']

    @pytest.mark.asyncio
    async def test_register_upserts_and_commits(self) -> None:
        factory, session = _make_factory()

        await RecipientDirectory(factory).register_endpoint('user-1', 'phone', 'tok-1')

        stmt = session.execute.await_args.args[0]
        assert 'ON CONFLICT' in str(stmt.compile(dialect=postgresql.dialect()))
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remove_reports_existence(self) -> None:
        factory, session = _make_factory()
        session.execute = AsyncMock(return_value=MagicMock(rowcount=1))
        directory = RecipientDirectory(factory)

        assert await directory.remove_endpoint('user-1', 'phone') is True

        session.execute = AsyncMock(return_value=MagicMock(rowcount=0))
        assert await directory.remove_endpoint('user-1', 'phone') is False


@pytest.mark.unit
class TestNotificationInbox:
    """Tests for NotificationInbox.append."""

    @pytest.mark.asyncio
    async def test_appends_unread_record(self) -> None:
        factory, session = _make_factory()
        message = PushMessage(
            title='Medication Reminder',
            body='Time for your Ibuprofen.',
            type='DOSAGE_REMINDER',
            related_id='rx-1',
            related_collection='prescriptions',
            data={'screen': '/prescriptionDetail', 'id': 'rx-1'},
        )

        record_id = await NotificationInbox(factory).append('user-1', message)

        record = session.add.call_args.args[0]
        assert isinstance(record, NotificationRecordModel)
        assert record.id == record_id
        assert record.owner_id == 'user-1'
        assert record.is_read is False
        assert record.related_id == 'rx-1'
        assert record.data == {'screen': '/prescriptionDetail', 'id': 'rx-1'}
        assert record.delivered_at.tzinfo is not None
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_commit_failure_propagates(self) -> None:
        factory, session = _make_factory()
        session.commit = AsyncMock(side_effect=RuntimeError('insert failed'))

        with pytest.raises(RuntimeError, match='insert failed'):
            await NotificationInbox(factory).append(
                'user-1', PushMessage(title='t', body='b', type='TEST')
            )
