"""
Reminder scheduling.

Main components:
- ReminderScheduler: polling trigger running one cycle per interval
- ReminderCycle: select due schedules, dispatch, advance
- ScheduleStateManager: database state management
- calculate_next_fire: next occurrence calculation

Example usage:
    from dosewatch.core.scheduler import ReminderScheduler

    scheduler = ReminderScheduler(app)
    await scheduler.run_forever()
"""

from dosewatch.core.scheduler.service import ReminderScheduler
from dosewatch.core.scheduler.cycle import (
    CycleReport,
    OutcomeKind,
    ReminderCycle,
    ScheduleOutcome,
)
from dosewatch.core.scheduler.state import AdvanceResult, DueSet, ScheduleStateManager
from dosewatch.core.scheduler.calculator import (
    Terminal,
    calculate_next_fire,
    first_occurrence,
)

__all__ = [
    'ReminderScheduler',
    'CycleReport',
    'OutcomeKind',
    'ReminderCycle',
    'ScheduleOutcome',
    'AdvanceResult',
    'DueSet',
    'ScheduleStateManager',
    'Terminal',
    'calculate_next_fire',
    'first_occurrence',
]
