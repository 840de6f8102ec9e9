"""
Unit tests for rotation policy classification.
"""

from datetime import timedelta

import pytest

from service_rotation.app.policy import days_since_rotation, evaluate_record, is_overdue, needs_notification
from shared.test_helpers import NOW, TestDataFactory


class TestDaysSinceRotation:
    """Test cases for days_since_rotation."""

    def test_truncates(self):
        assert days_since_rotation(NOW - timedelta(days=3, hours=23), NOW) == 3

    def test_exact_days(self):
        assert days_since_rotation(NOW - timedelta(days=45), NOW) == 45

    def test_same_instant(self):
        assert days_since_rotation(NOW, NOW) == 0


class TestClassification:
    """Test cases for needs_notification and is_overdue."""

    def test_overdue_45_day_secret(self):
        record = TestDataFactory.create_record(rotation_period_days=45, days_since_rotation=50)
        status = evaluate_record(record, NOW)

        assert status.days_since_rotation == 50
        assert status.needs_notification is True
        assert status.is_overdue is True
        assert status.overdue_days == 5

    def test_ten_days_remaining_is_not_due(self):
        record = TestDataFactory.create_record(rotation_period_days=90, days_since_rotation=80)
        status = evaluate_record(record, NOW)

        assert status.needs_notification is False
        assert status.is_overdue is False
        assert status.days_until_due == 10

    @pytest.mark.parametrize("days,expected", [(82, False), (83, True), (89, True), (90, True), (120, True)])
    def test_reminder_window(self, days, expected):
        record = TestDataFactory.create_record(rotation_period_days=90, days_since_rotation=days)

        assert needs_notification(record, days) is expected

    def test_already_notified(self):
        record = TestDataFactory.create_record(rotation_period_days=45, days_since_rotation=60,
                                               notification_sent=True)

        assert needs_notification(record, 60) is False
        assert is_overdue(record, 60) is True

    def test_due_day_thresholds(self):
        """On the due day the record is overdue for display but not by the strict clause."""
        record = TestDataFactory.create_record(rotation_period_days=60, days_since_rotation=60)

        assert is_overdue(record, 60) is True
        assert record.rotation_period_days - 60 <= 7
        assert needs_notification(record, 60) is True
        assert needs_notification(record, 60, reminder_days=-1) is False

    def test_custom_reminder_window(self):
        record = TestDataFactory.create_record(rotation_period_days=90, days_since_rotation=75)

        assert needs_notification(record, 75) is False
        assert needs_notification(record, 75, reminder_days=15) is True
