"""Dosewatch - medication reminder scheduling on PostgreSQL"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Dosewatch
from .core.models.app import AppConfig, CycleConfig
from .core.models.store import PostgresConfig
from .core.models.recurrence import (
    DailyFixedTime,
    CustomTimesPerDay,
    FixedIntervalHours,
    RecurrenceRule,
    parse_recurrence,
    rule_from_frequency,
)
from .core.models.schedule import ActiveWindow, MedicationSchedule
from .core.scheduler import (
    ReminderScheduler,
    ReminderCycle,
    CycleReport,
    OutcomeKind,
    ScheduleOutcome,
    ScheduleStateManager,
    AdvanceResult,
    Terminal,
    calculate_next_fire,
    first_occurrence,
)
from .core.delivery import (
    PushTransport,
    PushMessage,
    SendStatus,
    LoggingTransport,
    DeliveryOutcome,
    DeliveryStatus,
    EndpointStatus,
)
from .core.errors import (
    ErrorCode,
    DosewatchError,
    ConfigurationError,
    ScheduleDataError,
    MultipleValidationErrors,
)

__all__ = [
    # Core
    'Dosewatch',
    'AppConfig',
    'CycleConfig',
    'PostgresConfig',
    # Recurrence
    'DailyFixedTime',
    'CustomTimesPerDay',
    'FixedIntervalHours',
    'RecurrenceRule',
    'parse_recurrence',
    'rule_from_frequency',
    'ActiveWindow',
    'MedicationSchedule',
    # Scheduling
    'ReminderScheduler',
    'ReminderCycle',
    'CycleReport',
    'OutcomeKind',
    'ScheduleOutcome',
    'ScheduleStateManager',
    'AdvanceResult',
    'Terminal',
    'calculate_next_fire',
    'first_occurrence',
    # Delivery
    'PushTransport',
    'PushMessage',
    'SendStatus',
    'LoggingTransport',
    'DeliveryOutcome',
    'DeliveryStatus',
    'EndpointStatus',
    # Errors
    'ErrorCode',
    'DosewatchError',
    'ConfigurationError',
    'ScheduleDataError',
    'MultipleValidationErrors',
]
