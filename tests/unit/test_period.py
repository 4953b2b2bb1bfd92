"""Unit tests for submission window calculations."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from medsubmit.submission.period import (
    days_until_period,
    is_within_submission_period,
    next_submission_period,
)


class TestIsWithinSubmissionPeriod:
    """Tests for the day 5-10 window check."""

    @pytest.mark.parametrize("day", [5, 6, 7, 8, 9, 10])
    def test_days_inside_window(self, day):
        """Test that every day from the 5th to the 10th is inside."""
        assert is_within_submission_period(date(2024, 5, day)) is True

    @pytest.mark.parametrize("day", [1, 4, 11, 20, 31])
    def test_days_outside_window(self, day):
        """Test that days before the 5th and after the 10th are outside."""
        assert is_within_submission_period(date(2024, 5, day)) is False

    def test_boundaries_are_inclusive_for_datetimes(self):
        """Test first and last second of the window."""
        # Arrange
        first = datetime(2024, 5, 5, 0, 0, 0)
        last = datetime(2024, 5, 10, 23, 59, 59)
        after = datetime(2024, 5, 11, 0, 0, 0)

        # Act & Assert
        assert is_within_submission_period(first) is True
        assert is_within_submission_period(last) is True
        assert is_within_submission_period(after) is False

    def test_custom_window(self):
        """Test configurable start and end days."""
        assert is_within_submission_period(date(2024, 5, 15), start_day=12, end_day=18) is True
        assert is_within_submission_period(date(2024, 5, 5), start_day=12, end_day=18) is False

    @pytest.mark.parametrize("last_day", [date(2024, 2, 29), date(2023, 2, 28), date(2024, 4, 30)])
    def test_window_past_month_end_is_clamped(self, last_day):
        """Test a window starting after a short month ends opens on its last day."""
        # Act
        inside = is_within_submission_period(last_day, start_day=31, end_day=31)
        period = next_submission_period(last_day, start_day=31, end_day=31)

        # Assert
        assert inside is True
        assert period.start.date() == last_day
        assert period.end.date() == last_day
        assert days_until_period(last_day, start_day=31, end_day=31) == 0

    def test_clamped_window_excludes_earlier_days(self):
        assert is_within_submission_period(date(2024, 2, 28), start_day=30, end_day=31) is False


class TestNextSubmissionPeriod:
    """Tests for next window computation."""

    def test_before_window_returns_this_month(self):
        """Test a date before the 5th returns the same month's window."""
        # Act
        period = next_submission_period(date(2024, 5, 2))

        # Assert
        assert period.start == datetime(2024, 5, 5, 0, 0, 0)
        assert period.end == datetime(2024, 5, 10, 23, 59, 59)

    def test_inside_window_returns_current_window(self):
        """Test a date inside the window returns the open window."""
        period = next_submission_period(date(2024, 5, 7))

        assert period.start.date() == date(2024, 5, 5)
        assert period.contains(datetime(2024, 5, 7, 12, 0))

    def test_after_window_returns_next_month(self):
        """Test a date after the 10th returns next month's window."""
        period = next_submission_period(date(2024, 5, 11))

        assert period.start.date() == date(2024, 6, 5)
        assert period.end.date() == date(2024, 6, 10)

    def test_december_rolls_over_to_january(self):
        """Test the year rollover after the December window."""
        period = next_submission_period(date(2024, 12, 11))

        assert period.start == datetime(2025, 1, 5, 0, 0, 0)
        assert period.end == datetime(2025, 1, 10, 23, 59, 59)

    def test_short_month_clamps_window(self):
        """Test a window configured past the end of February is clamped."""
        period = next_submission_period(date(2024, 2, 1), start_day=28, end_day=31)

        assert period.start.date() == date(2024, 2, 28)
        assert period.end.date() == date(2024, 2, 29)

    def test_keeps_time_zone_of_moment(self):
        """Test aware moments produce windows in the same time zone."""
        # Arrange
        tz = ZoneInfo("Europe/Bucharest")
        moment = datetime(2024, 5, 20, 12, 0, tzinfo=tz)

        # Act
        period = next_submission_period(moment)

        # Assert
        assert period.start.tzinfo is tz
        assert period.start.date() == date(2024, 6, 5)

    def test_to_dict(self):
        """Test window serialization."""
        period = next_submission_period(date(2024, 5, 1))

        assert period.to_dict() == {
            "start": "2024-05-05T00:00:00",
            "end": "2024-05-10T23:59:59",
        }


class TestDaysUntilPeriod:
    """Tests for days_until_period."""

    def test_zero_inside_window(self):
        assert days_until_period(date(2024, 5, 8)) == 0

    def test_days_before_window(self):
        assert days_until_period(date(2024, 5, 3)) == 2

    def test_days_after_window(self):
        """Test counting into next month's window."""
        assert days_until_period(date(2024, 5, 31)) == 5

    def test_datetime_input(self):
        moment = datetime(2024, 5, 4, 23, 0, tzinfo=timezone.utc)
        assert days_until_period(moment) == 1
