"""Tests for invoice reminder cadence."""
from datetime import date, datetime, time
from types import SimpleNamespace

import pytest

from outbound.models import InvoiceSchedule, db
from outbound.services.invoice_reminders import (
    is_due_today,
    mark_reminder_sent,
    matches_recurring_days,
    matches_recurring_months,
    parse_send_time,
    reminder_dedupe_key,
)

from factories import make_customer, make_invoice, make_schedule


def schedule(frequency="monthly", start_date=None, interval_days=None, days_before_due=None):
    return SimpleNamespace(
        frequency=frequency,
        start_date=start_date,
        interval_days=interval_days,
        days_before_due=days_before_due,
    )


def invoice(issue_date=date(2025, 1, 10), due_date=date(2025, 2, 10), status="SENT", balance=100):
    return SimpleNamespace(issue_date=issue_date, due_date=due_date, status=status, balance=balance)


# ==============================================================================
# Send time
# ==============================================================================

class TestParseSendTime:

    @pytest.mark.parametrize("raw,expected", [
        ("09:00", time(9, 0)),
        ("17:45:30", time(17, 45)),
        (" 8:05 ", time(8, 5)),
        (None, None),
        ("", None),
        ("noon", None),
        ("25:00", None),
        ("09", None),
    ])
    def test_parse(self, raw, expected):
        assert parse_send_time(raw) == expected


# ==============================================================================
# Cadence
# ==============================================================================

class TestRecurringDays:

    def test_matches_on_interval_multiples(self):
        base = date(2025, 1, 1)
        assert matches_recurring_days(base, date(2025, 1, 1), 7)
        assert matches_recurring_days(base, date(2025, 1, 15), 7)
        assert not matches_recurring_days(base, date(2025, 1, 16), 7)

    def test_future_base_or_bad_interval_never_matches(self):
        assert not matches_recurring_days(date(2025, 2, 1), date(2025, 1, 1), 7)
        assert not matches_recurring_days(date(2025, 1, 1), date(2025, 1, 1), 0)
        assert not matches_recurring_days(date(2025, 1, 1), date(2025, 1, 1), None)


class TestRecurringMonths:

    def test_same_day_each_month(self):
        base = date(2025, 1, 10)
        assert matches_recurring_months(base, date(2025, 3, 10), 1)
        assert not matches_recurring_months(base, date(2025, 3, 11), 1)

    def test_month_end_is_clamped(self):
        base = date(2025, 1, 31)
        assert matches_recurring_months(base, date(2025, 2, 28), 1)
        assert matches_recurring_months(base, date(2025, 4, 30), 1)
        assert not matches_recurring_months(base, date(2025, 3, 1), 1)

    def test_quarterly(self):
        base = date(2025, 1, 15)
        assert matches_recurring_months(base, date(2025, 4, 15), 3)
        assert not matches_recurring_months(base, date(2025, 2, 15), 3)


class TestIsDueToday:

    def test_weekly_from_issue_date(self):
        assert is_due_today(schedule("weekly"), invoice(), date(2025, 1, 24))
        assert not is_due_today(schedule("weekly"), invoice(), date(2025, 1, 25))

    def test_start_date_overrides_issue_date(self):
        s = schedule("biweekly", start_date=date(2025, 1, 12))
        assert is_due_today(s, invoice(), date(2025, 1, 26))
        assert not is_due_today(s, invoice(), date(2025, 1, 24))

    def test_yearly(self):
        assert is_due_today(schedule("yearly"), invoice(), date(2026, 1, 10))

    def test_custom_uses_interval_days(self):
        s = schedule("custom", interval_days=3)
        assert is_due_today(s, invoice(), date(2025, 1, 16))
        assert not is_due_today(s, invoice(), date(2025, 1, 17))

    def test_custom_without_interval_never_matches(self):
        assert not is_due_today(schedule("custom"), invoice(), date(2025, 1, 10))

    def test_days_before_due(self):
        s = schedule("monthly", days_before_due=3)
        assert is_due_today(s, invoice(), date(2025, 2, 7))

    def test_paid_or_settled_invoice_never_due(self):
        assert not is_due_today(schedule("monthly"), invoice(status="PAID"), date(2025, 1, 10))
        assert not is_due_today(schedule("monthly"), invoice(balance=0), date(2025, 1, 10))

    def test_unknown_frequency(self):
        assert not is_due_today(schedule("hourly"), invoice(), date(2025, 1, 10))


def test_dedupe_key_is_per_schedule_per_day():
    assert reminder_dedupe_key(4, date(2025, 6, 1)) == "invoice_reminder:4:2025-06-01"


# ==============================================================================
# Success hook
# ==============================================================================

class TestMarkReminderSent:

    def test_stamps_last_sent_at(self, app):
        inv = make_invoice(make_customer())
        sched = make_schedule(inv)
        sent_at = datetime(2025, 6, 1, 2, 0)

        mark_reminder_sent(1, {"schedule_id": sched.id}, sent_at)
        db.session.commit()

        assert db.session.get(InvoiceSchedule, sched.id).last_sent_at == sent_at

    def test_missing_schedule_is_ignored(self, app):
        mark_reminder_sent(1, {"schedule_id": 999}, datetime(2025, 6, 1))
