# dosewatch/core/delivery/inbox.py
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from dosewatch.core.models.pg import NotificationRecordModel
from dosewatch.core.delivery.transport import PushMessage


class NotificationInbox:
    """Notification record sink; one unread record per dispatched message."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, owner_id: str, message: PushMessage) -> str:
        """
        Persist a notification record for the recipient.

        Returns:
            The record id

        Raises:
            sqlalchemy / psycopg errors on persistence failure
        """
        record_id = str(uuid.uuid4())
        record = NotificationRecordModel(
            id=record_id,
            owner_id=owner_id,
            title=message.title,
            body=message.body,
            type=message.type,
            related_id=message.related_id,
            related_collection=message.related_collection,
            data=dict(message.data),
            delivered_at=datetime.now(timezone.utc),
            is_read=False,
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
        return record_id
