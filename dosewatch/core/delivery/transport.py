"""Push delivery transport contract.

The transport is the one piece dosewatch does not implement: applications
pass an object satisfying ``PushTransport`` to ``Dosewatch(...)``. A send
reports one of three statuses and never needs to raise; a raising transport
is treated as a transient failure for that endpoint only.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from dosewatch.core.logging import get_logger


class SendStatus(str, Enum):
    """Result of a single send to a single endpoint."""

    DELIVERED = 'DELIVERED'
    PERMANENT_FAILURE = 'PERMANENT_FAILURE'
    TRANSIENT_FAILURE = 'TRANSIENT_FAILURE'


@dataclass(slots=True, frozen=True)
class PushMessage:
    """Notification content sent to every endpoint of a recipient.

    Fields:
        title: headline shown by the device
        body: message text
        type: notification category, e.g. 'DOSAGE_REMINDER'
        related_id: id of the entity the notification is about
        related_collection: collection the related entity lives in
        data: string navigation data delivered with the push
    """

    title: str
    body: str
    type: str
    related_id: Optional[str] = None
    related_collection: Optional[str] = None
    data: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, str]:
        """Flat string map sent alongside the visible notification."""
        payload = {'type': self.type}
        if self.related_id is not None:
            payload['docId'] = self.related_id
        if self.related_collection is not None:
            payload['collection'] = self.related_collection
        payload.update({k: str(v) for k, v in self.data.items()})
        return payload


class PushTransport(Protocol):
    """Sends one message to one device address."""

    @abstractmethod
    async def send(self, address: str, message: PushMessage) -> SendStatus: ...


class LoggingTransport:
    """Transport that only logs; every send is reported as delivered.

    Useful for local runs and `dosewatch send-test` without a push provider.
    """

    def __init__(self) -> None:
        self.logger = get_logger('transport')

    async def send(self, address: str, message: PushMessage) -> SendStatus:
        self.logger.info(
            f"push to {_mask_address(address)}: '{message.title}' - {message.body} "
            f'{message.to_payload()}'
        )
        return SendStatus.DELIVERED


def _mask_address(address: str) -> str:
    if len(address) <= 8:
        return '***'
    return f'{address[:4]}...{address[-4:]}'
