from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import RecurringItem, signed_cents
from periods import Period, add_months, days_in_month, month_start


class ReconciliationError(RuntimeError):
    """Stored ledger data the projection core cannot interpret."""


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def require_date(value: object, what: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if not isinstance(value, date):
        raise ReconciliationError(f"{what} has an invalid date: {value!r}")
    return value


def occurrence_amount_cents(rule: RecurringItem) -> int:
    return signed_cents(rule.type, rule.amount_cents)


def occurrence_in_month(rule: RecurringItem, year: int, month: int) -> date:
    """The rule's firing date in the given month, clamped to the month's last day."""
    day = rule.day_of_month
    if not isinstance(day, int) or not 1 <= day <= 31:
        raise ReconciliationError(
            f"Recurring item {rule.id} has an invalid day of month: {day!r}"
        )
    return date(year, month, min(day, days_in_month(year, month)))


def is_active_in_month(rule: RecurringItem, first_of_month: date) -> bool:
    duration = rule.duration_months
    if duration is not None and duration <= 0:
        return False
    if rule.start_date is None:
        return True
    start = require_date(rule.start_date, f"Recurring item {rule.id} start")
    first_active = month_start(start)
    if first_of_month < first_active:
        return False
    if duration is not None and first_of_month >= add_months(first_active, duration):
        return False
    return True


def expand_occurrences(rule: RecurringItem, period: Period) -> list[date]:
    end_date: Optional[date] = None
    if rule.end_date is not None:
        end_date = require_date(rule.end_date, f"Recurring item {rule.id} end")

    occurrences: list[date] = []
    for first in period.months():
        if not is_active_in_month(rule, first):
            continue
        occurrence = occurrence_in_month(rule, first.year, first.month)
        if end_date is not None and occurrence > end_date:
            continue
        if period.contains(occurrence):
            occurrences.append(occurrence)
    return occurrences
