from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def is_due_on(first_checkin: date, interval_days: int, day: date) -> bool:
    if interval_days < 1 or day < first_checkin:
        return False
    return (day - first_checkin).days % interval_days == 0


def next_due_date(first_checkin: date, interval_days: int, on_or_after: date) -> date:
    if on_or_after <= first_checkin:
        return first_checkin
    elapsed = (on_or_after - first_checkin).days
    periods = -(-elapsed // interval_days)
    return first_checkin + timedelta(days=periods * interval_days)


def final_submission_date(due_date: date, window_days: int) -> date:
    """Last day a check-in can be submitted: the due date counts as day one of the window."""
    if window_days <= 1:
        return due_date
    return due_date + timedelta(days=window_days - 1)


def is_past_submission_date(due_date: date, window_days: int, today: date) -> bool:
    return today > final_submission_date(due_date, window_days)


def expiry_cutoff(today: date, grace_period_days: int) -> date:
    """Check-ins due on or before this date are out of their submission window."""
    return today - timedelta(days=grace_period_days)


def reminder_due_date(today: date, reminder_day_offset: int) -> date:
    return today - timedelta(days=reminder_day_offset)


def format_notification_date(value: date) -> str:
    """``Monday 15 January 2025``."""
    return f"{value:%A} {value.day} {value:%B %Y}"


def business_today(timezone_name: str, now: datetime | None = None) -> date:
    zone = ZoneInfo(timezone_name)
    current = now.astimezone(zone) if now is not None else datetime.now(zone)
    return current.date()


def start_of_business_day(day: date, timezone_name: str) -> datetime:
    return datetime.combine(day, time.min, tzinfo=ZoneInfo(timezone_name))
