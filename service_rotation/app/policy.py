"""
Rotation policy classification.
"""

from dataclasses import dataclass
from datetime import datetime

from shared.records import SecretRecord, ensure_utc

DEFAULT_REMINDER_DAYS = 7


def days_since_rotation(last_modified_at: datetime, now: datetime) -> int:
    """Whole days elapsed, truncated."""
    return (ensure_utc(now) - ensure_utc(last_modified_at)).days


def needs_notification(record: SecretRecord, days: int, reminder_days: int = DEFAULT_REMINDER_DAYS) -> bool:
    # overdue here is strictly past the period; is_overdue below includes the due day
    due_soon = record.rotation_period_days - days <= reminder_days
    overdue = days > record.rotation_period_days
    return (due_soon or overdue) and not record.notification_sent


def is_overdue(record: SecretRecord, days: int) -> bool:
    return days >= record.rotation_period_days


@dataclass(frozen=True)
class RotationStatus:
    """Rotation state of one record at scan time."""
    record: SecretRecord
    days_since_rotation: int
    days_until_due: int
    needs_notification: bool
    is_overdue: bool

    @property
    def overdue_days(self) -> int:
        return max(0, -self.days_until_due)


def evaluate_record(record: SecretRecord, now: datetime,
                    reminder_days: int = DEFAULT_REMINDER_DAYS) -> RotationStatus:
    days = days_since_rotation(record.last_modified_at, now)
    return RotationStatus(
        record=record,
        days_since_rotation=days,
        days_until_due=record.rotation_period_days - days,
        needs_notification=needs_notification(record, days, reminder_days),
        is_overdue=is_overdue(record, days),
    )
