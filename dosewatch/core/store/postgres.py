# dosewatch/core/store/postgres.py
from __future__ import annotations
import hashlib
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy import text
from dosewatch.core.models.store import PostgresConfig
from dosewatch.core.models.pg import Base
from dosewatch.core.utils.url import mask_database_url
from dosewatch.core.logging import get_logger

HEALTH_CHECK_SQL = text("""SELECT 1""")


class PostgresStore:
    """
    PostgreSQL connection owner for schedules, endpoints and notifications.

    Holds the async engine and the session factory shared by the schedule
    state manager, the recipient directory and the notification inbox.
    One store per process; released with close_async().
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.logger = get_logger('store')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self._initialized = False

        self.logger.info(
            f'PostgresStore initialized for {mask_database_url(self.config.database_url)}'
        )

    def _schema_advisory_key(self) -> int:
        """
        Compute a stable 64-bit advisory lock key for schema initialization.

        Uses the database URL as a basis so that different clusters do not
        contend on the same advisory lock key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'dosewatch-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema_initialized(self) -> None:
        """
        Ensure tables and indexes exist.

        Safe to call multiple times and from multiple processes; internally
        guarded by a PostgreSQL advisory lock to avoid DDL races.
        """
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            await conn.execute(
                text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                {'key': self._schema_advisory_key()},
            )
            await conn.run_sync(Base.metadata.create_all)

        self._initialized = True
        self.logger.info('Schema initialized')

    async def ping(self) -> None:
        """Round-trip a trivial query; raises on connectivity problems."""
        async with self.session_factory() as session:
            await session.execute(HEALTH_CHECK_SQL)

    async def close_async(self) -> None:
        await self.async_engine.dispose()
        self.logger.info('PostgresStore closed')
