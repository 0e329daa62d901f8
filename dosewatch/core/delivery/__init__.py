from dosewatch.core.delivery.transport import (
    LoggingTransport,
    PushMessage,
    PushTransport,
    SendStatus,
)
from dosewatch.core.delivery.recipients import RecipientDirectory
from dosewatch.core.delivery.inbox import NotificationInbox
from dosewatch.core.delivery.fanout import (
    DeliveryOutcome,
    DeliveryStatus,
    DispatchFanout,
    EndpointResult,
    EndpointStatus,
    reminder_message,
)

__all__ = [
    'LoggingTransport',
    'PushMessage',
    'PushTransport',
    'SendStatus',
    'RecipientDirectory',
    'NotificationInbox',
    'DeliveryOutcome',
    'DeliveryStatus',
    'DispatchFanout',
    'EndpointResult',
    'EndpointStatus',
    'reminder_message',
]
