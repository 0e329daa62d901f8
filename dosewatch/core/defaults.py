"""Shared default constants for dosewatch."""

# Poll window around "now". The look-back absorbs delayed or missed polls,
# the look-ahead avoids firing a fraction of a poll period late.
DEFAULT_LOOKBACK_MINUTES: int = 15
DEFAULT_LOOKAHEAD_MINUTES: int = 5

# Upper bound on schedules processed concurrently within one cycle.
# Each in-flight schedule holds one pooled connection for its advisory lock.
DEFAULT_MAX_CONCURRENCY: int = 16

# Period of the built-in polling trigger.
DEFAULT_POLL_INTERVAL_SECONDS: int = 300

# Wall-clock recurrences are evaluated in this zone unless the rule names one.
DEFAULT_TIMEZONE: str = 'UTC'

# Medication reminder message
REMINDER_TITLE: str = 'Medication Reminder'
REMINDER_TYPE: str = 'DOSAGE_REMINDER'
REMINDER_COLLECTION: str = 'prescriptions'
REMINDER_SCREEN: str = '/prescriptionDetail'
