from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_start(value: date) -> date:
    return value.replace(day=1)


def add_months(base: date, months: int) -> date:
    """Shift ``base`` by whole months, clamping the day to the target month's length."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def same_month(a: date, b: date) -> bool:
    return a.year == b.year and a.month == b.month


@dataclass(frozen=True)
class Period:
    """Half-open date window: ``start <= d < end``."""

    slug: str
    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)

    def months(self) -> list[date]:
        """First day of every calendar month the window touches."""
        firsts: list[date] = []
        current = month_start(self.start)
        while current < self.end:
            firsts.append(current)
            current = add_months(current, 1)
        return firsts


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    return Period(f"{year:04d}-{month:02d}", first, add_months(first, 1))


def projection_period(today: date, months: int) -> Period:
    if months < 0:
        raise ValueError("Projection horizon must not be negative")
    return Period("projection", today, add_months(today, months))


def parse_month(value: str) -> tuple[int, int]:
    try:
        year_text, month_text = value.strip().split("-")
        year, month = int(year_text), int(month_text)
    except ValueError as exc:
        raise ValueError(f"Invalid month '{value}', expected YYYY-MM") from exc
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month '{value}', expected YYYY-MM")
    return year, month


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if period == "last_month":
        previous = add_months(month_start(today), -1)
        return month_period(previous.year, previous.month)
    if period == "next_month":
        following = add_months(month_start(today), 1)
        return month_period(following.year, following.month)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        # query strings carry an inclusive end date
        return Period("custom", start_date, end_date + timedelta(days=1))

    return month_period(today.year, today.month)
