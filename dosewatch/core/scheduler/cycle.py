# dosewatch/core/scheduler/cycle.py
from __future__ import annotations
import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional
from dosewatch.core.delivery.fanout import (
    DeliveryOutcome,
    DispatchFanout,
    reminder_message,
)
from dosewatch.core.errors import ScheduleDataError
from dosewatch.core.models.app import CycleConfig
from dosewatch.core.models.schedule import MedicationSchedule
from dosewatch.core.scheduler.calculator import (
    NextFire,
    Terminal,
    calculate_next_fire,
)
from dosewatch.core.scheduler.state import (
    AdvanceResult,
    InvalidScheduleRow,
    ScheduleStateManager,
)
from dosewatch.core.utils.db import is_retryable_connection_error
from dosewatch.core.logging import get_logger

logger = get_logger('cycle')

INVALID_RECURRENCE = 'invalid-recurrence'


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OutcomeKind(str, Enum):
    DISPATCHED = 'dispatched'
    DEACTIVATED = 'deactivated'
    SKIPPED_DUPLICATE = 'skipped-duplicate'
    LOST_RACE = 'lost-race'
    INVALID_SCHEDULE = 'invalid-schedule'
    FAILED = 'failed'


@dataclass(slots=True, frozen=True)
class ScheduleOutcome:
    """
    What happened to one due schedule in one cycle.

    `kind` is DEACTIVATED whenever the course ended during this cycle; the
    `dispatched` flag tells whether the final occurrence was delivered first.
    """

    schedule_id: str
    kind: OutcomeKind
    occurrence: Optional[datetime] = None
    next_fire_at: Optional[datetime] = None
    dispatched: bool = False
    delivery: Optional[DeliveryOutcome] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    outcomes: list[ScheduleOutcome] = field(default_factory=list)

    @property
    def counts(self) -> dict[OutcomeKind, int]:
        counter = Counter(outcome.kind for outcome in self.outcomes)
        return {kind: counter.get(kind, 0) for kind in OutcomeKind}

    @property
    def dispatched_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.dispatched)

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for outcome in self.outcomes if outcome.kind == kind)

    def get(self, schedule_id: str) -> Optional[ScheduleOutcome]:
        for outcome in self.outcomes:
            if outcome.schedule_id == schedule_id:
                return outcome
        return None

    def summary(self) -> str:
        parts = [f'{kind.value}={n}' for kind, n in self.counts.items() if n]
        return ', '.join(parts) if parts else 'nothing due'


class ReminderCycle:
    """
    One invocation of the reminder pipeline.

    Selects the due set with a single bulk read, then runs every due schedule
    through `_process` concurrently (bounded by `max_concurrency`):

        claim (advisory lock, fresh re-read) -> guard -> dispatch -> advance

    One schedule's failure is reported in its outcome and never aborts the
    batch. A failure of the due-set read itself propagates to the caller.
    """

    def __init__(
        self,
        state: ScheduleStateManager,
        fanout: DispatchFanout,
        config: CycleConfig,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.state = state
        self.fanout = fanout
        self.config = config
        self.clock = clock

    async def run(self, now: Optional[datetime] = None) -> CycleReport:
        now = now if now is not None else self.clock()
        report = CycleReport(started_at=now)

        due = await self.state.get_due_schedules(
            now,
            self.config.lookback,
            self.config.lookahead,
            include_overdue=self.config.include_overdue,
        )
        if not len(due):
            logger.debug(f'No schedules due at {now.isoformat()}')
            return report

        logger.info(
            f'Processing {len(due.schedules)} due schedule(s)'
            + (f', {len(due.invalid)} invalid' if due.invalid else '')
        )

        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def _bounded_process(schedule: MedicationSchedule) -> ScheduleOutcome:
            async with semaphore:
                return await self._process(schedule, now)

        async def _bounded_invalid(row: InvalidScheduleRow) -> ScheduleOutcome:
            async with semaphore:
                return await self._deactivate_invalid(row)

        outcomes = await asyncio.gather(
            *(_bounded_invalid(row) for row in due.invalid),
            *(_bounded_process(schedule) for schedule in due.schedules),
        )
        report.outcomes.extend(outcomes)

        logger.info(f'Cycle finished: {report.summary()}')
        return report

    async def _process(
        self, schedule: MedicationSchedule, now: datetime
    ) -> ScheduleOutcome:
        """Run one due schedule through claim, guard, dispatch and advance."""
        occurrence = schedule.next_fire_at
        if occurrence is None:
            return ScheduleOutcome(schedule_id=schedule.id, kind=OutcomeKind.LOST_RACE)

        try:
            async with self.state.claim(schedule.id) as session:
                try:
                    current = await self.state.get_schedule(schedule.id, session=session)
                except ScheduleDataError as e:
                    await self.state.deactivate(
                        schedule.id, INVALID_RECURRENCE, session=session
                    )
                    return self._invalid_outcome(schedule.id, e)

                # Another invocation moved the cursor since selection
                if (
                    current is None
                    or not current.is_active
                    or current.next_fire_at != occurrence
                ):
                    logger.debug(
                        f"Schedule '{schedule.id}' occurrence {occurrence} already handled"
                    )
                    return ScheduleOutcome(
                        schedule_id=schedule.id,
                        kind=OutcomeKind.LOST_RACE,
                        occurrence=occurrence,
                    )

                next_fire = calculate_next_fire(
                    current.recurrence, current.window, occurrence
                )

                if current.last_fired_at == occurrence:
                    logger.warning(
                        f"Schedule '{schedule.id}' occurrence {occurrence} already fired, "
                        f'moving cursor without dispatch'
                    )
                    result = await self.state.reschedule(
                        current, occurrence, next_fire, session=session
                    )
                    return self._advanced_outcome(
                        current,
                        occurrence,
                        next_fire,
                        result,
                        default_kind=OutcomeKind.SKIPPED_DUPLICATE,
                    )

                delivery = await self.fanout.deliver(
                    current.owner_id, reminder_message(current)
                )
                result = await self.state.advance(
                    current, occurrence, next_fire, session=session
                )
                logger.info(
                    f"Schedule '{schedule.id}' dispatched occurrence {occurrence} "
                    f'({delivery.status.value}, lag={now - occurrence})'
                )
                return self._advanced_outcome(
                    current,
                    occurrence,
                    next_fire,
                    result,
                    default_kind=OutcomeKind.DISPATCHED,
                    delivery=delivery,
                )

        except Exception as e:
            retryable = is_retryable_connection_error(e)
            if retryable:
                logger.warning(
                    f"Schedule '{schedule.id}' failed (transient), "
                    f'will retry next cycle: {e}'
                )
            else:
                logger.error(
                    f"Schedule '{schedule.id}' failed: {e}", exc_info=True
                )
            return ScheduleOutcome(
                schedule_id=schedule.id,
                kind=OutcomeKind.FAILED,
                occurrence=occurrence,
                error=str(e),
                retryable=retryable,
            )

    def _advanced_outcome(
        self,
        schedule: MedicationSchedule,
        occurrence: datetime,
        next_fire: NextFire,
        result: AdvanceResult,
        default_kind: OutcomeKind,
        delivery: Optional[DeliveryOutcome] = None,
    ) -> ScheduleOutcome:
        match result:
            case AdvanceResult.DEACTIVATED:
                kind = OutcomeKind.DEACTIVATED
            case AdvanceResult.LOST_RACE:
                kind = OutcomeKind.LOST_RACE
            case _:
                kind = default_kind

        return ScheduleOutcome(
            schedule_id=schedule.id,
            kind=kind,
            occurrence=occurrence,
            next_fire_at=None if isinstance(next_fire, Terminal) else next_fire,
            dispatched=delivery is not None,
            delivery=delivery,
        )

    def _invalid_outcome(self, schedule_id: str, error: ScheduleDataError) -> ScheduleOutcome:
        logger.warning(
            f"Schedule '{schedule_id}' has invalid data, deactivating: {error.message}"
        )
        return ScheduleOutcome(
            schedule_id=schedule_id,
            kind=OutcomeKind.INVALID_SCHEDULE,
            error=str(error),
        )

    async def _deactivate_invalid(self, row: InvalidScheduleRow) -> ScheduleOutcome:
        try:
            await self.state.deactivate(row.schedule_id, INVALID_RECURRENCE)
        except Exception as e:
            logger.error(
                f"Failed to deactivate invalid schedule '{row.schedule_id}': {e}"
            )
            return ScheduleOutcome(
                schedule_id=row.schedule_id,
                kind=OutcomeKind.FAILED,
                error=str(e),
                retryable=is_retryable_connection_error(e),
            )
        return self._invalid_outcome(row.schedule_id, row.error)
