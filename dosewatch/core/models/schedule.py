# dosewatch/core/models/schedule.py
from __future__ import annotations
from typing import Any, Optional
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator
from typing_extensions import Self
from dosewatch.core.errors import (
    DosewatchError,
    ErrorCode,
    ScheduleDataError,
)
from dosewatch.core.models.recurrence import RecurrenceRule, parse_recurrence


class ActiveWindow(BaseModel):
    """
    Course boundary of a medication schedule.

    The end is exclusive: an occurrence at or after `end` never fires.
    """

    model_config = ConfigDict(frozen=True)

    start: AwareDatetime = Field(description='First instant the course is active')
    end: Optional[AwareDatetime] = Field(
        default=None, description='Exclusive end of the course (None = open-ended)'
    )

    @model_validator(mode='after')
    def validate_order(self) -> Self:
        if self.end is not None and self.end <= self.start:
            raise ScheduleDataError(
                message='active window ends before it starts',
                code=ErrorCode.INVALID_ACTIVE_WINDOW,
                notes=[f'start={self.start.isoformat()}', f'end={self.end.isoformat()}'],
                help_text='end must be strictly later than start, or None',
                column='window_end',
            )
        return self


class MedicationSchedule(BaseModel):
    """
    One prescribed medication course and its reminder cursor.

    Fields:
        - id: Stable identifier of the course
        - owner_id: Recipient of the reminders
        - recurrence: Tagged recurrence rule (kind decides the params shape)
        - window: Course boundary
        - next_fire_at: Next unprocessed occurrence (None when inactive)
        - last_fired_at: Most recently processed occurrence, the idempotency token
        - is_active: False once the course ended or the rule stopped producing instants
        - display_label: Medication name used in the reminder body
        - advance_count: Occurrences processed so far
        - deactivated_reason: Why the schedule stopped, if it did
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    recurrence: RecurrenceRule
    window: ActiveWindow
    next_fire_at: Optional[AwareDatetime] = None
    last_fired_at: Optional[AwareDatetime] = None
    is_active: bool = True
    display_label: str = 'medication'
    advance_count: int = Field(default=0, ge=0)
    deactivated_reason: Optional[str] = None

    @model_validator(mode='after')
    def validate_cursor(self) -> Self:
        """An active schedule always has a next occurrence inside its window."""
        if self.is_active and self.next_fire_at is None:
            raise ScheduleDataError(
                message='active schedule has no next occurrence',
                code=ErrorCode.INVALID_RECURRENCE_PARAMS,
                schedule_id=self.id,
                column='next_fire_at',
            )
        if (
            self.is_active
            and self.next_fire_at is not None
            and self.window.end is not None
            and self.next_fire_at >= self.window.end
        ):
            raise ScheduleDataError(
                message='active schedule fires at or after its window end',
                code=ErrorCode.INVALID_ACTIVE_WINDOW,
                notes=[
                    f'next_fire_at={self.next_fire_at.isoformat()}',
                    f'end={self.window.end.isoformat()}',
                ],
                schedule_id=self.id,
                column='next_fire_at',
            )
        return self


def parse_schedule_row(row: Any) -> MedicationSchedule:
    """
    Convert a persisted schedule row into a MedicationSchedule.

    `row` is anything with the MedicationScheduleModel attributes (ORM
    instance or a result row). This is the only place stored schedule fields
    are interpreted; everything past it works with the typed model.

    Raises:
        ScheduleDataError: with `schedule_id` set, for any invalid field
    """
    schedule_id = str(getattr(row, 'id', '') or '')
    try:
        recurrence = parse_recurrence(row.recurrence_kind, row.recurrence_params)
        return MedicationSchedule(
            id=schedule_id,
            owner_id=row.owner_id,
            recurrence=recurrence,
            window=ActiveWindow(start=row.window_start, end=row.window_end),
            next_fire_at=row.next_fire_at,
            last_fired_at=row.last_fired_at,
            is_active=row.is_active,
            display_label=row.display_label or 'medication',
            advance_count=row.advance_count or 0,
            deactivated_reason=row.deactivated_reason,
        )
    except ScheduleDataError as e:
        raise e.for_schedule(schedule_id)
    except DosewatchError as e:
        raise ScheduleDataError(
            message=e.message,
            code=e.code,
            notes=list(e.notes),
            schedule_id=schedule_id,
        ) from e
    except ValueError as e:
        raise ScheduleDataError(
            message=f"schedule '{schedule_id}' failed validation",
            code=ErrorCode.INVALID_RECURRENCE_PARAMS,
            notes=[str(e)],
            schedule_id=schedule_id,
        ) from e
