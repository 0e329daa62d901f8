# dosewatch/core/scheduler/service.py
from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING, Optional
from dosewatch.core.scheduler.cycle import CycleReport, ReminderCycle
from dosewatch.core.logging import get_logger

if TYPE_CHECKING:
    from dosewatch.core.app import Dosewatch

logger = get_logger('scheduler')


class ReminderScheduler:
    """
    Polling trigger for the reminder cycle.

    Responsibilities:
    1. Ensure the database schema exists
    2. Run one ReminderCycle every `poll_interval_seconds`
    3. Keep running when a cycle fails; the next poll retries

    Runs as a separate process. External cron setups use `run_once()`
    (`dosewatch tick`) instead of the loop.
    """

    def __init__(self, app: Dosewatch):
        self.app = app
        self.cycle: Optional[ReminderCycle] = None
        self._stop = asyncio.Event()
        self._initialized = False

        logger.info(
            f'Scheduler initialized, poll_interval={app.config.cycle.poll_interval_seconds}s'
        )

    async def start(self) -> None:
        """Initialize store schema and build the cycle.

        Schema initialization retry is handled at the CLI orchestration level
        (see scheduler_command in cli.py), not here.
        """
        if self._initialized:
            return

        store = self.app.get_store()
        await store.ensure_schema_initialized()
        logger.info('Store initialized')

        self.cycle = self.app.build_cycle()

        self._initialized = True
        logger.info('Scheduler started successfully')

    async def stop(self) -> None:
        """Clean shutdown of scheduler."""
        self._stop.set()
        await self.app.close()
        logger.info('Scheduler stopped')

    def request_stop(self) -> None:
        """Request scheduler to stop gracefully."""
        self._stop.set()

    async def run_once(self) -> CycleReport:
        """Run a single reminder cycle."""
        await self.start()
        if not self.cycle:
            raise RuntimeError('Scheduler not properly initialized')
        return await self.cycle.run()

    async def run_forever(self) -> None:
        """
        Main scheduler loop.

        Cycles run back to back: the poll interval is waited out after each
        cycle finishes, so a slow cycle delays the next one. For invocations
        that never wait on each other, drive `dosewatch tick` from cron or
        another external trigger instead; overlapping ticks are safe.
        """
        logger.info('Starting scheduler loop')

        try:
            await self.start()

            while not self._stop.is_set():
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error(f'Error in scheduler loop: {e}', exc_info=True)

                # Wait for poll interval or stop signal
                try:
                    await asyncio.wait_for(
                        self._stop.wait(),
                        timeout=self.app.config.cycle.poll_interval_seconds,
                    )
                    break  # Stop signal received
                except asyncio.TimeoutError:
                    continue

        finally:
            await self.stop()
