# dosewatch/core/scheduler/state.py
from __future__ import annotations
import hashlib
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Optional
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from dosewatch.core.errors import ScheduleDataError
from dosewatch.core.models.pg import MedicationScheduleModel
from dosewatch.core.models.recurrence import RecurrenceRule, recurrence_params
from dosewatch.core.models.schedule import (
    ActiveWindow,
    MedicationSchedule,
    parse_schedule_row,
)
from dosewatch.core.scheduler.calculator import (
    NextFire,
    Terminal,
    first_occurrence,
)
from dosewatch.core.logging import get_logger

logger = get_logger('state')

SCHEDULE_ADVISORY_LOCK_SQL = text(
    """SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))"""
)

# Conditional on the occurrence still being the stored cursor and not yet
# recorded as fired: a concurrent invocation that advanced first makes this
# a no-op (0 rows).
ADVANCE_SCHEDULE_SQL = text("""
    UPDATE dosewatch_schedules
    SET last_fired_at = :occurrence,
        next_fire_at = :next_fire_at,
        is_active = :is_active,
        deactivated_reason = :deactivated_reason,
        advance_count = advance_count + 1,
        updated_at = :now
    WHERE id = :schedule_id
      AND is_active
      AND next_fire_at = :occurrence
      AND last_fired_at IS DISTINCT FROM :occurrence
""")

# Moves the cursor of an occurrence that was already fired, last_fired_at untouched.
RESCHEDULE_SQL = text("""
    UPDATE dosewatch_schedules
    SET next_fire_at = :next_fire_at,
        is_active = :is_active,
        deactivated_reason = :deactivated_reason,
        updated_at = :now
    WHERE id = :schedule_id
      AND is_active
      AND next_fire_at = :occurrence
""")

DEACTIVATE_SCHEDULE_SQL = text("""
    UPDATE dosewatch_schedules
    SET is_active = FALSE,
        next_fire_at = NULL,
        deactivated_reason = :deactivated_reason,
        updated_at = :now
    WHERE id = :schedule_id
      AND is_active
""")


class AdvanceResult(str, Enum):
    """Outcome of a conditional cursor update."""

    ADVANCED = 'advanced'
    DEACTIVATED = 'deactivated'
    LOST_RACE = 'lost-race'


@dataclass(slots=True, frozen=True)
class InvalidScheduleRow:
    """A due row that could not be parsed into a MedicationSchedule."""

    schedule_id: str
    error: ScheduleDataError


@dataclass(slots=True)
class DueSet:
    """Result of one due-set selection."""

    schedules: list[MedicationSchedule] = field(default_factory=list)
    invalid: list[InvalidScheduleRow] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.schedules) + len(self.invalid)


def _cursor_values(next_fire: NextFire) -> dict[str, object]:
    """Column values for a computed next occurrence; is_active and next_fire_at always together."""
    if isinstance(next_fire, Terminal):
        return {
            'next_fire_at': None,
            'is_active': False,
            'deactivated_reason': next_fire.reason,
        }
    return {
        'next_fire_at': next_fire,
        'is_active': True,
        'deactivated_reason': None,
    }


class ScheduleStateManager:
    """
    Manages medication schedule state persistence in PostgreSQL.

    Provides the two operations the reminder cycle needs from storage:
    - Bulk selection of due schedules for a poll window
    - Atomic conditional cursor updates (advance / reschedule / deactivate)

    plus schedule creation and the per-schedule advisory lock used to
    serialize overlapping invocations.

    Methods that take a `session` run inside the caller's transaction and
    leave committing to the caller; without one they open and commit their own.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session_scope(
        self, session: Optional[AsyncSession]
    ) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self.session_factory() as own_session:
            yield own_session
            await own_session.commit()

    def schedule_advisory_key(self, schedule_id: str) -> int:
        """
        Compute a stable 64-bit advisory lock key for a schedule.

        Prevents overlapping invocations from dispatching the same occurrence.
        """
        basis = f'dosewatch-schedule:{schedule_id}'.encode('utf-8')
        h = hashlib.sha256(basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    @asynccontextmanager
    async def claim(self, schedule_id: str) -> AsyncIterator[AsyncSession]:
        """
        Open a transaction holding the schedule's advisory lock.

        The lock is transaction-scoped: it is released when the block commits
        or, on error, when the session closes and rolls back.
        """
        async with self.session_factory() as session:
            await session.execute(
                SCHEDULE_ADVISORY_LOCK_SQL,
                {'key': self.schedule_advisory_key(schedule_id)},
            )
            yield session
            await session.commit()

    async def get_due_schedules(
        self,
        now: datetime,
        lookback: timedelta,
        lookahead: timedelta,
        include_overdue: bool = False,
    ) -> DueSet:
        """
        Retrieve active schedules whose next occurrence is due.

        Args:
            now: Current time in UTC
            lookback: Oldest occurrence selected is `now - lookback`
            lookahead: Newest occurrence selected is `now + lookahead`
            include_overdue: Drop the lower bound so occurrences missed during
                an outage are still selected

        Returns:
            DueSet ordered by next_fire_at; rows that fail to parse are
            reported in `invalid` instead of aborting the read
        """
        upper = now + lookahead
        stmt = (
            select(MedicationScheduleModel)
            .where(MedicationScheduleModel.is_active.is_(True))
            .where(MedicationScheduleModel.next_fire_at.is_not(None))
            .where(MedicationScheduleModel.next_fire_at <= upper)
        )
        if not include_overdue:
            stmt = stmt.where(MedicationScheduleModel.next_fire_at >= now - lookback)
        stmt = stmt.order_by(MedicationScheduleModel.next_fire_at.asc())

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = list(result.scalars())

        due = DueSet()
        for row in rows:
            try:
                due.schedules.append(parse_schedule_row(row))
            except ScheduleDataError as e:
                due.invalid.append(InvalidScheduleRow(schedule_id=row.id, error=e))
        return due

    async def get_schedule(
        self,
        schedule_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[MedicationSchedule]:
        """
        Retrieve the latest stored state of a schedule.

        Raises:
            ScheduleDataError: If the stored row is invalid
        """
        async with self._session_scope(session) as s:
            row = await s.get(
                MedicationScheduleModel, schedule_id, populate_existing=True
            )
            if row is None:
                return None
            return parse_schedule_row(row)

    async def advance(
        self,
        schedule: MedicationSchedule,
        occurrence: datetime,
        next_fire: NextFire,
        session: Optional[AsyncSession] = None,
    ) -> AdvanceResult:
        """
        Record `occurrence` as fired and install the next occurrence.

        Args:
            schedule: Schedule being advanced
            occurrence: The occurrence that was dispatched (UTC)
            next_fire: Next occurrence, or Terminal to deactivate
        """
        values = _cursor_values(next_fire)
        async with self._session_scope(session) as s:
            result = await s.execute(
                ADVANCE_SCHEDULE_SQL,
                {
                    'schedule_id': schedule.id,
                    'occurrence': occurrence,
                    'now': datetime.now(timezone.utc),
                    **values,
                },
            )

        return self._log_update(schedule.id, 'advance', result, next_fire)

    async def reschedule(
        self,
        schedule: MedicationSchedule,
        occurrence: datetime,
        next_fire: NextFire,
        session: Optional[AsyncSession] = None,
    ) -> AdvanceResult:
        """
        Move the cursor past an occurrence that was already fired.

        Used when the idempotency guard skips dispatch; last_fired_at keeps
        its value.
        """
        values = _cursor_values(next_fire)
        async with self._session_scope(session) as s:
            result = await s.execute(
                RESCHEDULE_SQL,
                {
                    'schedule_id': schedule.id,
                    'occurrence': occurrence,
                    'now': datetime.now(timezone.utc),
                    **values,
                },
            )

        return self._log_update(schedule.id, 'reschedule', result, next_fire)

    async def deactivate(
        self,
        schedule_id: str,
        reason: str,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Deactivate a schedule, clearing its cursor in the same statement.

        Returns:
            True if a still-active schedule was deactivated
        """
        async with self._session_scope(session) as s:
            result = await s.execute(
                DEACTIVATE_SCHEDULE_SQL,
                {
                    'schedule_id': schedule_id,
                    'deactivated_reason': reason,
                    'now': datetime.now(timezone.utc),
                },
            )

        rows_updated = getattr(result, 'rowcount', 0)
        if rows_updated == 0:
            logger.debug(f"Schedule '{schedule_id}' already inactive or missing")
            return False
        logger.info(f"Deactivated schedule '{schedule_id}' ({reason})")
        return True

    def _log_update(
        self,
        schedule_id: str,
        operation: str,
        result: object,
        next_fire: NextFire,
    ) -> AdvanceResult:
        rows_updated = getattr(result, 'rowcount', 0)
        if rows_updated == 0:
            logger.warning(
                f"Schedule '{schedule_id}' {operation} skipped - cursor already moved"
            )
            return AdvanceResult.LOST_RACE
        if isinstance(next_fire, Terminal):
            logger.info(
                f"Schedule '{schedule_id}' {operation}: deactivated ({next_fire.reason})"
            )
            return AdvanceResult.DEACTIVATED
        logger.debug(f"Schedule '{schedule_id}' {operation}: next_fire_at={next_fire}")
        return AdvanceResult.ADVANCED

    async def create_schedule(
        self,
        schedule_id: str,
        owner_id: str,
        recurrence: RecurrenceRule,
        window: ActiveWindow,
        display_label: str,
    ) -> MedicationSchedule:
        """
        Persist a new schedule with its cursor on the first occurrence.

        A course whose first occurrence already falls past its end is stored
        inactive. Creating an existing id returns the stored schedule unchanged.
        """
        async with self.session_factory() as session:
            existing = await session.get(MedicationScheduleModel, schedule_id)
            if existing is not None:
                logger.debug(f"Schedule '{schedule_id}' already exists")
                return parse_schedule_row(existing)

            values = _cursor_values(first_occurrence(recurrence, window))
            now = datetime.now(timezone.utc)
            row = MedicationScheduleModel(
                id=schedule_id,
                owner_id=owner_id,
                recurrence_kind=recurrence.kind,
                recurrence_params=recurrence_params(recurrence),
                window_start=window.start,
                window_end=window.end,
                last_fired_at=None,
                display_label=display_label,
                advance_count=0,
                created_at=now,
                updated_at=now,
                **values,
            )
            session.add(row)
            await session.commit()
            logger.info(
                f"Created schedule '{schedule_id}' for owner '{owner_id}', "
                f"next_fire_at={values['next_fire_at']}"
            )
            return parse_schedule_row(row)
