"""Tests for DispatchFanout: per-endpoint isolation, pruning and record writing."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from dosewatch.core.defaults import REMINDER_TITLE, REMINDER_TYPE
from dosewatch.core.delivery.fanout import (
    DeliveryStatus,
    DispatchFanout,
    EndpointStatus,
    reminder_message,
)
from dosewatch.core.delivery.transport import (
    LoggingTransport,
    PushMessage,
    SendStatus,
)
from dosewatch.core.models.recurrence import FixedIntervalHours
from dosewatch.core.models.schedule import ActiveWindow, MedicationSchedule


# =============================================================================
# Helpers
# =============================================================================


MESSAGE = PushMessage(title='Medication Reminder', body='Time for your Ibuprofen.', type='DOSAGE_REMINDER')


class _ScriptedTransport:
    """Transport returning a fixed status (or raising) per address."""

    def __init__(self, script: dict[str, Any]):
        self.script = script
        self.sent: list[str] = []

    async def send(self, address: str, message: PushMessage) -> SendStatus:
        self.sent.append(address)
        outcome = self.script[address]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _make_fanout(
    endpoints: dict[str, str],
    transport: Any,
) -> tuple[DispatchFanout, MagicMock, MagicMock]:
    directory = MagicMock()
    directory.list_endpoints = AsyncMock(return_value=endpoints)
    directory.remove_endpoint = AsyncMock(return_value=True)

    inbox = MagicMock()
    inbox.append = AsyncMock(return_value='record-1')

    return DispatchFanout(directory, transport, inbox), directory, inbox


# =============================================================================
# deliver
# =============================================================================


@pytest.mark.unit
class TestDeliver:
    """Tests for DispatchFanout.deliver."""

    @pytest.mark.asyncio
    async def test_all_endpoints_delivered(self) -> None:
        transport = _ScriptedTransport({'addr-a': SendStatus.DELIVERED, 'addr-b': SendStatus.DELIVERED})
        fanout, directory, inbox = _make_fanout({'A': 'addr-a', 'B': 'addr-b'}, transport)

        outcome = await fanout.deliver('user-1', MESSAGE)

        assert outcome.status == DeliveryStatus.DELIVERED
        assert outcome.count(EndpointStatus.DELIVERED) == 2
        assert sorted(transport.sent) == ['addr-a', 'addr-b']
        inbox.append.assert_awaited_once_with('user-1', MESSAGE)
        directory.remove_endpoint.assert_not_awaited()
        assert outcome.record_id == 'record-1'

    @pytest.mark.asyncio
    async def test_invalid_endpoint_pruned_others_unaffected(self) -> None:
        transport = _ScriptedTransport(
            {
                'addr-a': SendStatus.DELIVERED,
                'addr-b': SendStatus.PERMANENT_FAILURE,
                'addr-c': SendStatus.DELIVERED,
            }
        )
        fanout, directory, inbox = _make_fanout(
            {'A': 'addr-a', 'B': 'addr-b', 'C': 'addr-c'}, transport
        )

        outcome = await fanout.deliver('user-1', MESSAGE)

        by_id = {r.endpoint_id: r for r in outcome.results}
        assert by_id['A'].status == EndpointStatus.DELIVERED
        assert by_id['C'].status == EndpointStatus.DELIVERED
        assert by_id['B'].status == EndpointStatus.PERMANENTLY_INVALID
        assert by_id['B'].pruned is True
        directory.remove_endpoint.assert_awaited_once_with('user-1', 'B')
        inbox.append.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transient_failure_kept(self) -> None:
        transport = _ScriptedTransport({'addr-a': SendStatus.TRANSIENT_FAILURE})
        fanout, directory, _ = _make_fanout({'A': 'addr-a'}, transport)

        outcome = await fanout.deliver('user-1', MESSAGE)

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.results[0].status == EndpointStatus.TRANSIENTLY_FAILED
        directory.remove_endpoint.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_raising_transport_is_transient(self) -> None:
        transport = _ScriptedTransport(
            {'addr-a': ConnectionError('push gateway down'), 'addr-b': SendStatus.DELIVERED}
        )
        fanout, directory, inbox = _make_fanout({'A': 'addr-a', 'B': 'addr-b'}, transport)

        outcome = await fanout.deliver('user-1', MESSAGE)

        by_id = {r.endpoint_id: r for r in outcome.results}
        assert by_id['A'].status == EndpointStatus.TRANSIENTLY_FAILED
        assert by_id['A'].error == 'push gateway down'
        assert by_id['B'].status == EndpointStatus.DELIVERED
        directory.remove_endpoint.assert_not_awaited()
        inbox.append.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_endpoints_sends_and_records_nothing(self) -> None:
        transport = _ScriptedTransport({})
        fanout, _, inbox = _make_fanout({}, transport)

        outcome = await fanout.deliver('user-1', MESSAGE)

        assert outcome.status == DeliveryStatus.NO_ENDPOINTS
        assert outcome.results == ()
        assert transport.sent == []
        assert outcome.record_id is None
        inbox.append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_prune_failure_does_not_fail_delivery(self) -> None:
        transport = _ScriptedTransport({'addr-a': SendStatus.PERMANENT_FAILURE})
        fanout, directory, inbox = _make_fanout({'A': 'addr-a'}, transport)
        directory.remove_endpoint = AsyncMock(side_effect=RuntimeError('db gone'))

        outcome = await fanout.deliver('user-1', MESSAGE)

        assert outcome.results[0].status == EndpointStatus.PERMANENTLY_INVALID
        assert outcome.results[0].pruned is False
        inbox.append.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_record_failure_propagates(self) -> None:
        transport = _ScriptedTransport({'addr-a': SendStatus.DELIVERED})
        fanout, _, inbox = _make_fanout({'A': 'addr-a'}, transport)
        inbox.append = AsyncMock(side_effect=RuntimeError('insert failed'))

        with pytest.raises(RuntimeError, match='insert failed'):
            await fanout.deliver('user-1', MESSAGE)


# =============================================================================
# Messages
# =============================================================================


@pytest.mark.unit
class TestReminderMessage:
    """Tests for reminder_message and PushMessage payloads."""

    def _schedule(self) -> MedicationSchedule:
        return MedicationSchedule(
            id='rx-42',
            owner_id='user-1',
            recurrence=FixedIntervalHours(hours=8),
            window=ActiveWindow(start=datetime(2025, 6, 1, tzinfo=timezone.utc)),
            next_fire_at=datetime(2025, 6, 1, 8, tzinfo=timezone.utc),
            display_label='Amoxicillin 500mg',
        )

    def test_reminder_content(self) -> None:
        message = reminder_message(self._schedule())

        assert message.title == REMINDER_TITLE
        assert message.type == REMINDER_TYPE
        assert message.body == 'Time for your Amoxicillin 500mg.'
        assert message.related_id == 'rx-42'

    def test_payload_includes_navigation(self) -> None:
        payload = reminder_message(self._schedule()).to_payload()

        assert payload['type'] == 'DOSAGE_REMINDER'
        assert payload['docId'] == 'rx-42'
        assert payload['collection'] == 'prescriptions'
        assert payload['screen'] == '/prescriptionDetail'
        assert payload['id'] == 'rx-42'

    def test_payload_without_related_entity(self) -> None:
        payload = MESSAGE.to_payload()

        assert payload == {'type': 'DOSAGE_REMINDER'}

    @pytest.mark.asyncio
    async def test_logging_transport_delivers(self) -> None:
        status = await LoggingTransport().send('device-token-abcdef', MESSAGE)

        assert status == SendStatus.DELIVERED
