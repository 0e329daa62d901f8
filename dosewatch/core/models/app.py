# dosewatch/core/models/app.py
from datetime import timedelta
from pydantic import BaseModel, ConfigDict, Field, model_validator
from dosewatch.core.defaults import (
    DEFAULT_LOOKAHEAD_MINUTES,
    DEFAULT_LOOKBACK_MINUTES,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_POLL_INTERVAL_SECONDS,
)
from dosewatch.core.errors import (
    ConfigurationError,
    DosewatchError,
    ErrorCode,
    raise_collected,
)
from dosewatch.core.models.store import PostgresConfig
from dosewatch.core.utils.url import mask_database_url
import logging


class CycleConfig(BaseModel):
    """
    Reminder cycle configuration.

    Fields:
        - lookback_minutes: How far behind "now" a due occurrence may lie
        - lookahead_minutes: How far ahead of "now" an occurrence counts as due
        - max_concurrency: Schedules processed concurrently per cycle
        - poll_interval_seconds: Period of the built-in polling trigger
        - include_overdue: Also select occurrences older than the look-back
          window (catch-up after an outage, one occurrence per cycle)

    include_overdue is on by default, so the due-set is every cursor at or
    before now + lookahead and lookback_minutes has no effect. An occurrence
    stays due until it is advanced. Turn it off to apply the look-back bound,
    which then must cover the poll interval.
    """

    model_config = ConfigDict(frozen=True)

    lookback_minutes: int = Field(default=DEFAULT_LOOKBACK_MINUTES)
    lookahead_minutes: int = Field(default=DEFAULT_LOOKAHEAD_MINUTES)
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY)
    poll_interval_seconds: int = Field(default=DEFAULT_POLL_INTERVAL_SECONDS)
    include_overdue: bool = Field(default=True)

    @model_validator(mode='after')
    def validate_cycle(self):
        """Collect all independent errors and raise them together."""
        errors: list[DosewatchError] = []

        if self.lookback_minutes < 0:
            errors.append(
                ConfigurationError(
                    message='lookback_minutes must be non-negative',
                    code=ErrorCode.CONFIG_INVALID_CYCLE,
                    setting='cycle.lookback_minutes',
                    notes=[f'got lookback_minutes={self.lookback_minutes}'],
                    help_text='use 0 to select only occurrences at or after now',
                )
            )
        if self.lookahead_minutes < 0:
            errors.append(
                ConfigurationError(
                    message='lookahead_minutes must be non-negative',
                    code=ErrorCode.CONFIG_INVALID_CYCLE,
                    setting='cycle.lookahead_minutes',
                    notes=[f'got lookahead_minutes={self.lookahead_minutes}'],
                    help_text='use 0 to never fire ahead of time',
                )
            )
        if self.max_concurrency < 1:
            errors.append(
                ConfigurationError(
                    message='max_concurrency must be at least 1',
                    code=ErrorCode.CONFIG_INVALID_CYCLE,
                    setting='cycle.max_concurrency',
                    notes=[f'got max_concurrency={self.max_concurrency}'],
                )
            )
        if self.poll_interval_seconds < 1:
            errors.append(
                ConfigurationError(
                    message='poll_interval_seconds must be at least 1',
                    code=ErrorCode.CONFIG_INVALID_CYCLE,
                    setting='cycle.poll_interval_seconds',
                    notes=[f'got poll_interval_seconds={self.poll_interval_seconds}'],
                )
            )
        elif (
            not self.include_overdue
            and self.poll_interval_seconds > self.lookback_minutes * 60
        ):
            # Occurrences falling between two polls would never be selected
            errors.append(
                ConfigurationError(
                    message='poll interval is longer than the look-back window',
                    code=ErrorCode.CONFIG_INVALID_CYCLE,
                    setting='cycle.poll_interval_seconds',
                    notes=[
                        f'poll_interval_seconds={self.poll_interval_seconds}',
                        f'lookback_minutes={self.lookback_minutes}',
                    ],
                    help_text='raise lookback_minutes or enable include_overdue',
                )
            )

        raise_collected(errors)
        return self

    @property
    def lookback(self) -> timedelta:
        return timedelta(minutes=self.lookback_minutes)

    @property
    def lookahead(self) -> timedelta:
        return timedelta(minutes=self.lookahead_minutes)


class AppConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    store: PostgresConfig
    cycle: CycleConfig = Field(default_factory=CycleConfig)

    @model_validator(mode='after')
    def validate_pool_capacity(self):
        # Each in-flight schedule holds a connection for its claim; delivery
        # needs at least one more from the same pool.
        capacity = self.store.pool_size + self.store.max_overflow
        if self.cycle.max_concurrency >= capacity:
            raise ConfigurationError(
                message='max_concurrency leaves no pool connection for delivery',
                code=ErrorCode.CONFIG_INVALID_CYCLE,
                setting='cycle.max_concurrency',
                notes=[
                    f'max_concurrency={self.cycle.max_concurrency}',
                    f'pool_size + max_overflow={capacity}',
                ],
                help_text='keep max_concurrency below pool_size + max_overflow',
            )
        return self

    def log_config(self, logger: logging.Logger) -> None:
        """Log the effective configuration with the database password masked."""
        logger.info(
            f'store: {mask_database_url(self.store.database_url)} '
            f'(pool_size={self.store.pool_size}, max_overflow={self.store.max_overflow})'
        )
        logger.info(
            f'cycle: window=[-{self.cycle.lookback_minutes}m, +{self.cycle.lookahead_minutes}m], '
            f'include_overdue={self.cycle.include_overdue}, '
            f'max_concurrency={self.cycle.max_concurrency}, '
            f'poll_interval={self.cycle.poll_interval_seconds}s'
        )
