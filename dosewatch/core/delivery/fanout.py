# dosewatch/core/delivery/fanout.py
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from dosewatch.core.defaults import (
    REMINDER_COLLECTION,
    REMINDER_SCREEN,
    REMINDER_TITLE,
    REMINDER_TYPE,
)
from dosewatch.core.delivery.inbox import NotificationInbox
from dosewatch.core.delivery.recipients import RecipientDirectory
from dosewatch.core.delivery.transport import PushMessage, PushTransport, SendStatus
from dosewatch.core.models.schedule import MedicationSchedule
from dosewatch.core.logging import get_logger

logger = get_logger('fanout')


class EndpointStatus(str, Enum):
    DELIVERED = 'delivered'
    PERMANENTLY_INVALID = 'permanently-invalid'
    TRANSIENTLY_FAILED = 'transiently-failed'


class DeliveryStatus(str, Enum):
    """Summary of one fan-out across all endpoints of a recipient."""

    DELIVERED = 'delivered'  # at least one endpoint accepted the message
    FAILED = 'failed'  # endpoints existed, none accepted
    NO_ENDPOINTS = 'no-endpoints'


_SEND_TO_ENDPOINT_STATUS = {
    SendStatus.DELIVERED: EndpointStatus.DELIVERED,
    SendStatus.PERMANENT_FAILURE: EndpointStatus.PERMANENTLY_INVALID,
    SendStatus.TRANSIENT_FAILURE: EndpointStatus.TRANSIENTLY_FAILED,
}


@dataclass(slots=True, frozen=True)
class EndpointResult:
    endpoint_id: str
    status: EndpointStatus
    pruned: bool = False
    error: Optional[str] = None


@dataclass(slots=True, frozen=True)
class DeliveryOutcome:
    """
    Per-endpoint results of one deliver() call plus the written record id.

    record_id is None when the recipient had no endpoints and nothing was sent.
    """

    owner_id: str
    results: tuple[EndpointResult, ...]
    record_id: Optional[str] = None

    @property
    def status(self) -> DeliveryStatus:
        if not self.results:
            return DeliveryStatus.NO_ENDPOINTS
        if any(r.status == EndpointStatus.DELIVERED for r in self.results):
            return DeliveryStatus.DELIVERED
        return DeliveryStatus.FAILED

    def count(self, status: EndpointStatus) -> int:
        return sum(1 for r in self.results if r.status == status)


def reminder_message(schedule: MedicationSchedule) -> PushMessage:
    """Build the dosage reminder for a schedule's occurrence."""
    return PushMessage(
        title=REMINDER_TITLE,
        body=f'Time for your {schedule.display_label}.',
        type=REMINDER_TYPE,
        related_id=schedule.id,
        related_collection=REMINDER_COLLECTION,
        data={'screen': REMINDER_SCREEN, 'id': schedule.id},
    )


class DispatchFanout:
    """
    Delivers one message to every registered endpoint of a recipient.

    Endpoints are attempted concurrently and independently. One failing
    endpoint never affects the others:
    - PERMANENT_FAILURE prunes the endpoint from the directory
    - TRANSIENT_FAILURE (or a raising transport) is reported, not retried

    Exactly one notification record is appended per call, after all attempts
    finish. A recipient with no endpoints gets neither a send nor a record.
    A record-sink failure propagates to the caller.
    """

    def __init__(
        self,
        directory: RecipientDirectory,
        transport: PushTransport,
        inbox: NotificationInbox,
    ):
        self.directory = directory
        self.transport = transport
        self.inbox = inbox

    async def deliver(self, owner_id: str, message: PushMessage) -> DeliveryOutcome:
        endpoints = await self.directory.list_endpoints(owner_id)
        if not endpoints:
            logger.info(f"Owner '{owner_id}' has no registered endpoints, nothing sent")
            return DeliveryOutcome(owner_id=owner_id, results=())

        results = await asyncio.gather(
            *(
                self._attempt(owner_id, endpoint_id, address, message)
                for endpoint_id, address in endpoints.items()
            )
        )

        record_id = await self.inbox.append(owner_id, message)

        outcome = DeliveryOutcome(
            owner_id=owner_id,
            results=tuple(results),
            record_id=record_id,
        )
        logger.debug(
            f"Delivered '{message.type}' to owner '{owner_id}': "
            f'{outcome.count(EndpointStatus.DELIVERED)}/{len(results)} endpoints, '
            f'{outcome.count(EndpointStatus.PERMANENTLY_INVALID)} invalid, '
            f'{outcome.count(EndpointStatus.TRANSIENTLY_FAILED)} transient'
        )
        return outcome

    async def _attempt(
        self,
        owner_id: str,
        endpoint_id: str,
        address: str,
        message: PushMessage,
    ) -> EndpointResult:
        try:
            send_status = await self.transport.send(address, message)
        except Exception as e:
            logger.warning(
                f"Transport raised for endpoint '{endpoint_id}' of owner '{owner_id}': {e}"
            )
            return EndpointResult(
                endpoint_id=endpoint_id,
                status=EndpointStatus.TRANSIENTLY_FAILED,
                error=str(e),
            )

        status = _SEND_TO_ENDPOINT_STATUS.get(send_status, EndpointStatus.TRANSIENTLY_FAILED)
        match status:
            case EndpointStatus.PERMANENTLY_INVALID:
                pruned = await self._prune(owner_id, endpoint_id)
                return EndpointResult(endpoint_id=endpoint_id, status=status, pruned=pruned)
            case EndpointStatus.TRANSIENTLY_FAILED:
                logger.warning(
                    f"Transient delivery failure for endpoint '{endpoint_id}' of owner '{owner_id}'"
                )
                return EndpointResult(endpoint_id=endpoint_id, status=status)
            case _:
                return EndpointResult(endpoint_id=endpoint_id, status=status)

    async def _prune(self, owner_id: str, endpoint_id: str) -> bool:
        try:
            removed = await self.directory.remove_endpoint(owner_id, endpoint_id)
        except Exception as e:
            logger.error(
                f"Failed to remove invalid endpoint '{endpoint_id}' of owner '{owner_id}': {e}"
            )
            return False
        logger.info(f"Removed invalid endpoint '{endpoint_id}' of owner '{owner_id}'")
        return removed
