# dosewatch/core/delivery/recipients.py
from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from dosewatch.core.models.pg import RecipientEndpointModel
from dosewatch.core.logging import get_logger

logger = get_logger('recipients')


class RecipientDirectory:
    """
    Registered delivery endpoints per recipient.

    Endpoints are registered by the application (device sign-in) and pruned
    by the dispatch fan-out when the transport reports them permanently invalid.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_endpoints(self, owner_id: str) -> dict[str, str]:
        """Return the recipient's endpoints as endpoint_id -> address."""
        stmt = (
            select(RecipientEndpointModel.endpoint_id, RecipientEndpointModel.address)
            .where(RecipientEndpointModel.owner_id == owner_id)
            .order_by(RecipientEndpointModel.registered_at.asc())
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return {row.endpoint_id: row.address for row in result}

    async def register_endpoint(
        self, owner_id: str, endpoint_id: str, address: str
    ) -> None:
        """Add an endpoint, replacing the address of an existing one."""
        stmt = pg_insert(RecipientEndpointModel).values(
            owner_id=owner_id,
            endpoint_id=endpoint_id,
            address=address,
            registered_at=datetime.now(timezone.utc),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['owner_id', 'endpoint_id'],
            set_={'address': stmt.excluded.address},
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug(f"Registered endpoint '{endpoint_id}' for owner '{owner_id}'")

    async def remove_endpoint(self, owner_id: str, endpoint_id: str) -> bool:
        """
        Remove one endpoint.

        Returns:
            True if the endpoint existed
        """
        stmt = delete(RecipientEndpointModel).where(
            RecipientEndpointModel.owner_id == owner_id,
            RecipientEndpointModel.endpoint_id == endpoint_id,
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return getattr(result, 'rowcount', 0) > 0
