# dosewatch/core/models/recurrence.py
from __future__ import annotations
from datetime import time as datetime_time
from typing import Annotated, Any, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)
from dosewatch.core.defaults import DEFAULT_TIMEZONE
from dosewatch.core.errors import ErrorCode, ScheduleDataError


def _parse_time_of_day(value: Any) -> Any:
    """Accept 'HH:MM' / 'HH:MM:SS' strings; everything else goes to pydantic."""
    if isinstance(value, str):
        try:
            return datetime_time.fromisoformat(value.strip())
        except ValueError:
            raise ValueError(f"invalid time of day '{value}', expected HH:MM")
    return value


def _check_wall_clock(value: datetime_time) -> datetime_time:
    if value.tzinfo is not None:
        raise ValueError('time of day must not carry a timezone, use the timezone field')
    return value.replace(microsecond=0)


def _check_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleDataError(
            message=f"unknown timezone '{value}'",
            code=ErrorCode.INVALID_TIMEZONE,
            notes=[str(e)],
            column='recurrence_params',
            help_text="use an IANA timezone name such as 'UTC' or 'Europe/Berlin'",
        )
    return value


TimeOfDay = Annotated[
    datetime_time,
    BeforeValidator(_parse_time_of_day),
    AfterValidator(_check_wall_clock),
]
TimezoneName = Annotated[str, AfterValidator(_check_timezone)]


class DailyFixedTime(BaseModel):
    """
    Fire once a day at the same wall-clock time.

    Examples:
        - Every morning at 08:00 UTC -> DailyFixedTime(time=time(8, 0))
        - 21:30 in Berlin -> DailyFixedTime(time=time(21, 30), timezone='Europe/Berlin')
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal['daily-fixed-time'] = 'daily-fixed-time'
    time: TimeOfDay = Field(description='Wall-clock time of day (HH:MM[:SS])')
    timezone: TimezoneName = Field(
        default=DEFAULT_TIMEZONE, description='Timezone the wall clock is read in'
    )


class CustomTimesPerDay(BaseModel):
    """
    Fire at several wall-clock times every day.

    Times are kept sorted and duplicate times collapse into a single slot.

    Examples:
        - Three doses a day -> CustomTimesPerDay(times=['08:00', '14:00', '20:00'])
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal['custom-times-per-day'] = 'custom-times-per-day'
    times: tuple[TimeOfDay, ...] = Field(
        min_length=1, description='Wall-clock times of day (HH:MM[:SS])'
    )
    timezone: TimezoneName = Field(
        default=DEFAULT_TIMEZONE, description='Timezone the wall clock is read in'
    )

    @field_validator('times')
    @classmethod
    def sort_unique_times(
        cls, value: tuple[datetime_time, ...]
    ) -> tuple[datetime_time, ...]:
        """Collapse duplicate slots and order them across the day."""
        return tuple(sorted(set(value)))


class FixedIntervalHours(BaseModel):
    """
    Fire every N hours, measured in absolute time.

    Examples:
        - Every 6 hours -> FixedIntervalHours(hours=6)
        - Every 90 minutes -> FixedIntervalHours(hours=1.5)
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal['fixed-interval-hours'] = 'fixed-interval-hours'
    hours: float = Field(gt=0, le=24 * 31, description='Interval length in hours')


RecurrenceRule = Annotated[
    Union[DailyFixedTime, CustomTimesPerDay, FixedIntervalHours],
    Field(discriminator='kind'),
]

RECURRENCE_KINDS: frozenset[str] = frozenset(
    {'daily-fixed-time', 'custom-times-per-day', 'fixed-interval-hours'}
)

_rule_adapter: TypeAdapter[RecurrenceRule] = TypeAdapter(RecurrenceRule)


def parse_recurrence(kind: Optional[str], params: Optional[dict[str, Any]]) -> RecurrenceRule:
    """
    Build a recurrence rule from its stored kind and params.

    Raises:
        ScheduleDataError: unknown kind (E100), missing/invalid params (E101)
            or unknown timezone (E102)
    """
    if kind not in RECURRENCE_KINDS:
        raise ScheduleDataError(
            message=f'unknown recurrence kind {kind!r}',
            code=ErrorCode.UNKNOWN_RECURRENCE_KIND,
            notes=[f'known kinds: {sorted(RECURRENCE_KINDS)}'],
            column='recurrence_kind',
        )
    if params is None:
        raise ScheduleDataError(
            message=f"recurrence params missing for kind '{kind}'",
            code=ErrorCode.INVALID_RECURRENCE_PARAMS,
            column='recurrence_params',
        )

    payload = {k: v for k, v in params.items() if k != 'kind'}
    payload['kind'] = kind
    try:
        return _rule_adapter.validate_python(payload)
    except ValueError as e:
        # pydantic.ValidationError is a ValueError subclass
        raise ScheduleDataError(
            message=f"invalid recurrence params for kind '{kind}'",
            code=ErrorCode.INVALID_RECURRENCE_PARAMS,
            notes=[str(e)],
            column='recurrence_params',
        ) from e


def recurrence_params(rule: RecurrenceRule) -> dict[str, Any]:
    """JSON-safe params for storage (the kind is stored in its own column)."""
    return rule.model_dump(mode='json', exclude={'kind'})


# Frequency names used by older prescription records.
_DAILY_ALIASES: dict[str, datetime_time] = {
    'daily_morning': datetime_time(8, 0),
    'daily_noon': datetime_time(12, 0),
    'daily_evening': datetime_time(20, 0),
    'daily_bedtime': datetime_time(22, 0),
}
_CUSTOM_ALIASES = frozenset({'twice_a_day_custom', 'thrice_a_day_custom'})
_INTERVAL_ALIASES: dict[str, int] = {
    'every_6_hours': 6,
    'every_8_hours': 8,
    'every_12_hours': 12,
}


def rule_from_frequency(
    frequency: str,
    reminder_times: Optional[list[str]] = None,
    timezone: str = DEFAULT_TIMEZONE,
) -> RecurrenceRule:
    """
    Translate a legacy prescription frequency name into a recurrence rule.

    Examples:
        rule_from_frequency('daily_morning')  -> DailyFixedTime(08:00)
        rule_from_frequency('every_8_hours')  -> FixedIntervalHours(8)
        rule_from_frequency('twice_a_day_custom', ['08:00', '20:00'])

    Raises:
        ScheduleDataError: unknown frequency (E104) or custom frequency
            without reminder times (E101)
    """
    name = frequency.strip().lower()

    if name in _DAILY_ALIASES:
        return DailyFixedTime(time=_DAILY_ALIASES[name], timezone=timezone)

    if name in _CUSTOM_ALIASES:
        if not reminder_times:
            raise ScheduleDataError(
                message=f"frequency '{frequency}' requires reminder times",
                code=ErrorCode.INVALID_RECURRENCE_PARAMS,
                help_text="pass reminder_times such as ['08:00', '20:00']",
            )
        return parse_recurrence(
            'custom-times-per-day', {'times': reminder_times, 'timezone': timezone}
        )

    if name in _INTERVAL_ALIASES:
        return FixedIntervalHours(hours=_INTERVAL_ALIASES[name])

    known = sorted([*_DAILY_ALIASES, *_CUSTOM_ALIASES, *_INTERVAL_ALIASES])
    raise ScheduleDataError(
        message=f"unknown frequency '{frequency}'",
        code=ErrorCode.UNKNOWN_FREQUENCY,
        notes=[f'known frequencies: {known}'],
    )
