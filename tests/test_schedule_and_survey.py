from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from app.models import CheckinInterval, CheckinStatus, OffenderStatus
from app.services.schedule import (
    business_today,
    expiry_cutoff,
    final_submission_date,
    format_notification_date,
    is_due_on,
    is_past_submission_date,
    next_due_date,
    reminder_due_date,
    start_of_business_day,
)
from app.services.survey import PILOT_SURVEY_VERSION, flagged_survey_responses, requested_callback


class ScheduleTests(unittest.TestCase):
    def test_is_due_on_weekly_interval(self) -> None:
        first = date(2025, 1, 1)
        self.assertTrue(is_due_on(first, 7, date(2025, 1, 1)))
        self.assertTrue(is_due_on(first, 7, date(2025, 1, 8)))
        self.assertFalse(is_due_on(first, 7, date(2025, 1, 9)))
        self.assertFalse(is_due_on(first, 7, date(2024, 12, 25)))

    def test_next_due_date_rounds_up_to_next_occurrence(self) -> None:
        first = date(2025, 1, 1)
        self.assertEqual(next_due_date(first, 7, date(2024, 12, 1)), first)
        self.assertEqual(next_due_date(first, 7, date(2025, 1, 8)), date(2025, 1, 8))
        self.assertEqual(next_due_date(first, 7, date(2025, 1, 9)), date(2025, 1, 15))

    def test_submission_window_includes_due_date(self) -> None:
        due = date(2025, 6, 8)
        self.assertEqual(final_submission_date(due, 3), date(2025, 6, 10))
        self.assertEqual(final_submission_date(due, 1), due)
        self.assertFalse(is_past_submission_date(due, 3, date(2025, 6, 10)))
        self.assertTrue(is_past_submission_date(due, 3, date(2025, 6, 11)))

    def test_expiry_and_reminder_dates(self) -> None:
        today = date(2025, 6, 11)
        self.assertEqual(expiry_cutoff(today, 3), date(2025, 6, 8))
        self.assertEqual(reminder_due_date(today, 1), date(2025, 6, 10))

    def test_format_notification_date(self) -> None:
        self.assertEqual(format_notification_date(date(2025, 1, 13)), "Monday 13 January 2025")

    def test_business_today_uses_local_zone(self) -> None:
        late_utc = datetime(2025, 6, 30, 23, 30, tzinfo=timezone.utc)
        self.assertEqual(business_today("Europe/London", late_utc), date(2025, 7, 1))
        self.assertEqual(business_today("UTC", late_utc), date(2025, 6, 30))

    def test_start_of_business_day_is_local_midnight(self) -> None:
        start = start_of_business_day(date(2025, 7, 1), "Europe/London")
        self.assertEqual(start.astimezone(timezone.utc), datetime(2025, 6, 30, 23, 0, tzinfo=timezone.utc))


class IntervalAndStatusTests(unittest.TestCase):
    def test_interval_days_round_trip(self) -> None:
        self.assertEqual(CheckinInterval.TWO_WEEKS.days, 14)
        self.assertIs(CheckinInterval.from_days(56), CheckinInterval.EIGHT_WEEKS)
        with self.assertRaises(ValueError):
            CheckinInterval.from_days(10)

    def test_checkin_transitions(self) -> None:
        self.assertTrue(CheckinStatus.CREATED.can_transition_to(CheckinStatus.SUBMITTED))
        self.assertTrue(CheckinStatus.CREATED.can_transition_to(CheckinStatus.EXPIRED))
        self.assertTrue(CheckinStatus.EXPIRED.can_transition_to(CheckinStatus.REVIEWED))
        self.assertFalse(CheckinStatus.SUBMITTED.can_transition_to(CheckinStatus.EXPIRED))
        self.assertFalse(CheckinStatus.REVIEWED.can_transition_to(CheckinStatus.SUBMITTED))
        self.assertFalse(CheckinStatus.CREATED.can_transition_to(CheckinStatus.REVIEWED))

    def test_offender_transitions(self) -> None:
        self.assertTrue(OffenderStatus.INITIAL.can_transition_to(OffenderStatus.VERIFIED))
        self.assertTrue(OffenderStatus.INACTIVE.can_transition_to(OffenderStatus.VERIFIED))
        self.assertFalse(OffenderStatus.VERIFIED.can_transition_to(OffenderStatus.INITIAL))


class SurveyFlagTests(unittest.TestCase):
    def test_pilot_survey_flags(self) -> None:
        survey = {
            "version": PILOT_SURVEY_VERSION,
            "mentalHealth": "STRUGGLING",
            "assistance": ["HOUSING"],
            "callback": "YES",
        }
        self.assertEqual(flagged_survey_responses(survey), ["mentalHealth", "assistance", "callback"])
        self.assertTrue(requested_callback(survey))

    def test_pilot_survey_without_concerns(self) -> None:
        survey = {
            "version": PILOT_SURVEY_VERSION,
            "mentalHealth": "WELL",
            "assistance": ["NO_HELP"],
            "callback": "NO",
        }
        self.assertEqual(flagged_survey_responses(survey), [])
        self.assertFalse(requested_callback(survey))

    def test_unknown_version_and_empty_survey(self) -> None:
        self.assertEqual(flagged_survey_responses({"version": "other", "callback": "YES"}), [])
        self.assertEqual(flagged_survey_responses(None), [])
        self.assertFalse(requested_callback(None))


if __name__ == "__main__":
    unittest.main()
