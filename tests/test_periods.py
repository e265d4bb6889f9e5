from datetime import date

import pytest

from periods import (
    Period,
    add_months,
    days_in_month,
    month_period,
    parse_month,
    projection_period,
    resolve_period,
)


def test_days_in_month_handles_leap_years():
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2023, 2) == 28
    assert days_in_month(2024, 12) == 31
    assert days_in_month(2024, 4) == 30


def test_add_months_clamps_day():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)
    assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
    assert add_months(date(2024, 1, 1), -1) == date(2023, 12, 1)


def test_month_period_is_half_open():
    period = month_period(2024, 12)
    assert period.slug == "2024-12"
    assert period.start == date(2024, 12, 1)
    assert period.end == date(2025, 1, 1)
    assert period.last_day == date(2024, 12, 31)
    assert period.contains(date(2024, 12, 31))
    assert not period.contains(date(2025, 1, 1))
    assert not period.contains(date(2024, 11, 30))


def test_period_months_lists_touched_months():
    period = Period("custom", date(2024, 1, 20), date(2024, 3, 2))
    assert period.months() == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]

    exact = Period("custom", date(2024, 1, 1), date(2024, 3, 1))
    assert exact.months() == [date(2024, 1, 1), date(2024, 2, 1)]


def test_projection_period_spans_horizon():
    period = projection_period(date(2024, 1, 31), 1)
    assert period.start == date(2024, 1, 31)
    assert period.end == date(2024, 2, 29)

    empty = projection_period(date(2024, 5, 10), 0)
    assert empty.start == empty.end

    with pytest.raises(ValueError):
        projection_period(date(2024, 5, 10), -1)


def test_parse_month():
    assert parse_month("2024-03") == (2024, 3)
    for bad in ("2024", "2024-13", "march", "2024-00"):
        with pytest.raises(ValueError):
            parse_month(bad)


def test_resolve_period_presets():
    today = date(2024, 1, 15)
    assert resolve_period(None, None, None, today=today).slug == "2024-01"
    assert resolve_period("last_month", None, None, today=today).slug == "2023-12"
    assert resolve_period("next_month", None, None, today=today).slug == "2024-02"


def test_resolve_period_custom_end_is_inclusive():
    period = resolve_period("custom", "2024-02-01", "2024-02-10")
    assert period.contains(date(2024, 2, 10))
    assert not period.contains(date(2024, 2, 11))

    with pytest.raises(ValueError):
        resolve_period("custom", "2024-02-10", "2024-02-01")
    with pytest.raises(ValueError):
        resolve_period("custom", "2024-02-10", None)
