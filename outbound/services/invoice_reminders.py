"""Recurring invoice reminder cadence."""
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta

DAY_INTERVALS = {"weekly": 7, "biweekly": 14}
MONTH_INTERVALS = {"monthly": 1, "quarterly": 3, "yearly": 12}
FREQUENCIES = ("weekly", "biweekly", "monthly", "quarterly", "yearly", "custom")


def parse_send_time(value: Optional[str]) -> Optional[time]:
    """Parse "HH:MM" (or "HH:MM:SS"). Returns None for empty or malformed values."""
    if not value:
        return None
    parts = value.strip().split(":")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except (IndexError, ValueError):
        return None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return time(hour, minute)


def matches_recurring_days(base: date, today: date, interval: int) -> bool:
    if interval is None or interval <= 0 or base > today:
        return False
    return (today - base).days % interval == 0


def matches_recurring_months(base: date, today: date, months: int) -> bool:
    """True if today is base + k*months for some k >= 0 (month-end clamped)."""
    if months <= 0 or base > today:
        return False
    step = 0
    cursor = base
    while cursor <= today:
        if cursor == today:
            return True
        step += 1
        cursor = base + relativedelta(months=step * months)
    return False


def is_due_today(schedule, invoice, today: date) -> bool:
    """
    Whether a reminder should go out for this schedule on `today`.

    Paid or zero-balance invoices never match. A `days_before_due` hit matches
    on its own; otherwise the frequency is stepped from start_date (or the
    invoice's issue date).
    """
    if invoice.status == "PAID" or Decimal(invoice.balance or 0) <= 0:
        return False

    if schedule.days_before_due is not None:
        if invoice.due_date - timedelta(days=schedule.days_before_due) == today:
            return True

    base = schedule.start_date or invoice.issue_date
    if base is None or base > today:
        return False

    frequency = schedule.frequency
    if frequency in DAY_INTERVALS:
        return matches_recurring_days(base, today, DAY_INTERVALS[frequency])
    if frequency in MONTH_INTERVALS:
        return matches_recurring_months(base, today, MONTH_INTERVALS[frequency])
    if frequency == "custom":
        return matches_recurring_days(base, today, schedule.interval_days)
    return False


def reminder_dedupe_key(schedule_id: int, today: date) -> str:
    return f"invoice_reminder:{schedule_id}:{today.isoformat()}"


def mark_reminder_sent(task_id: int, payload: dict, now: datetime):
    """Success hook for invoice reminders: stamp the schedule's last_sent_at."""
    from outbound.models import InvoiceSchedule, db

    schedule = db.session.get(InvoiceSchedule, payload.get("schedule_id"))
    if schedule is not None:
        schedule.last_sent_at = now
