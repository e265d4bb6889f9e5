"""Event reconciliation and the views derived from it.

Three sources describe money movement: realized transactions, one-off
planned items and recurring items. Recurring items produce "ghost"
occurrences until a transaction referencing the item claims that
calendar month (confirmed, planned or skipped). Everything here is a
pure function over a :class:`LedgerSnapshot`; nothing touches the
database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Optional, Sequence

from models import (
    PlannedItem,
    RecurringItem,
    Transaction,
    TransactionStatus,
)
from periods import Period, month_period, projection_period
from recurrence import (
    ReconciliationError,
    require_date,
    expand_occurrences,
    occurrence_amount_cents,
)

RECURRING_STATUS = "recurring"


class EventKind(str, Enum):
    transaction = "transaction"
    planned = "planned"
    recurring = "recurring"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    source_id: Optional[int]
    label: str
    date: date
    amount_cents: int
    status: str
    category_id: Optional[int] = None
    recurring_id: Optional[int] = None

    @property
    def is_ghost(self) -> bool:
        return self.kind == EventKind.recurring


@dataclass(frozen=True)
class ProjectionPoint:
    date: date
    balance_cents: int
    label: Optional[str] = None
    amount_cents: Optional[int] = None

    @property
    def balance(self) -> int:
        """Balance rounded to whole currency units for charting."""
        units = (Decimal(self.balance_cents) / Decimal(100)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(units)


@dataclass(frozen=True)
class LedgerSnapshot:
    transactions: Sequence[Transaction] = field(default_factory=tuple)
    recurring_items: Sequence[RecurringItem] = field(default_factory=tuple)
    planned_items: Sequence[PlannedItem] = field(default_factory=tuple)
    initial_balance_cents: int = 0

    def balance_cents(self) -> int:
        return compute_balance(self.initial_balance_cents, self.transactions)


def _status_of(txn: Transaction) -> TransactionStatus:
    if txn.status is None:
        return TransactionStatus.confirmed
    try:
        return TransactionStatus(txn.status)
    except ValueError as exc:
        raise ReconciliationError(
            f"Transaction {txn.id} has an unknown status: {txn.status!r}"
        ) from exc


def _amount_of(record: object, what: str) -> int:
    amount = getattr(record, "amount_cents", None)
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ReconciliationError(f"{what} has an invalid amount: {amount!r}")
    return amount


def is_balance_affecting(txn: Transaction) -> bool:
    return _status_of(txn) == TransactionStatus.confirmed


def compute_balance(
    initial_balance_cents: int, transactions: Iterable[Transaction]
) -> int:
    total = sum(
        _amount_of(txn, f"Transaction {txn.id}")
        for txn in transactions
        if is_balance_affecting(txn)
    )
    return initial_balance_cents + total


def back_solve_initial_balance(
    target_balance_cents: int,
    current_balance_cents: int,
    initial_balance_cents: int,
) -> int:
    """Initial balance that makes the current balance equal ``target_balance_cents``."""
    return target_balance_cents - (current_balance_cents - initial_balance_cents)


def _claimed_months(transactions: Iterable[Transaction]) -> set[tuple[int, int, int]]:
    claimed: set[tuple[int, int, int]] = set()
    for txn in transactions:
        if txn.recurring_id is None:
            continue
        txn_date = require_date(txn.date, f"Transaction {txn.id}")
        claimed.add((txn.recurring_id, txn_date.year, txn_date.month))
    return claimed


def month_claims(
    snapshot: LedgerSnapshot, recurring_id: int, year: int, month: int
) -> list[Transaction]:
    """Every transaction claiming ``recurring_id`` for the given month."""
    claims: list[Transaction] = []
    for txn in snapshot.transactions:
        if txn.recurring_id != recurring_id:
            continue
        txn_date = require_date(txn.date, f"Transaction {txn.id}")
        if txn_date.year == year and txn_date.month == month:
            claims.append(txn)
    return claims


# strongest claim first
_CLAIM_PRECEDENCE = (
    (TransactionStatus.confirmed, "paid"),
    (TransactionStatus.planned, TransactionStatus.planned.value),
    (TransactionStatus.skipped, TransactionStatus.skipped.value),
)


def recurring_status(
    snapshot: LedgerSnapshot, recurring_id: int, year: int, month: int
) -> Optional[str]:
    """``paid``, ``planned`` or ``skipped`` for the month, or None while the ghost is open.

    When several transactions claim the same month the strongest wins, so a
    payment recorded after a skip still reads as paid.
    """
    statuses = {
        _status_of(txn) for txn in month_claims(snapshot, recurring_id, year, month)
    }
    for status, label in _CLAIM_PRECEDENCE:
        if status in statuses:
            return label
    return None


def _transaction_event(txn: Transaction, txn_date: date) -> Event:
    return Event(
        kind=EventKind.transaction,
        source_id=txn.id,
        label=txn.label,
        date=txn_date,
        amount_cents=_amount_of(txn, f"Transaction {txn.id}"),
        status=_status_of(txn).value,
        category_id=txn.category_id,
        recurring_id=txn.recurring_id,
    )


def reconcile_events(snapshot: LedgerSnapshot, period: Period) -> list[Event]:
    events: list[Event] = []

    for item in snapshot.planned_items:
        item_date = require_date(item.date, f"Planned item {item.id}")
        if period.contains(item_date):
            events.append(
                Event(
                    kind=EventKind.planned,
                    source_id=item.id,
                    label=item.label,
                    date=item_date,
                    amount_cents=_amount_of(item, f"Planned item {item.id}"),
                    status=TransactionStatus.planned.value,
                    category_id=item.category_id,
                )
            )

    for txn in snapshot.transactions:
        txn_date = require_date(txn.date, f"Transaction {txn.id}")
        if _status_of(txn) == TransactionStatus.planned and period.contains(txn_date):
            events.append(_transaction_event(txn, txn_date))

    claimed = _claimed_months(snapshot.transactions)
    for rule in snapshot.recurring_items:
        for occurrence in expand_occurrences(rule, period):
            if (rule.id, occurrence.year, occurrence.month) in claimed:
                continue
            events.append(
                Event(
                    kind=EventKind.recurring,
                    source_id=rule.id,
                    label=rule.label,
                    date=occurrence,
                    amount_cents=occurrence_amount_cents(rule),
                    status=RECURRING_STATUS,
                    category_id=rule.category_id,
                    recurring_id=rule.id,
                )
            )

    # list.sort is stable: same-day events keep collection order
    events.sort(key=lambda event: event.date)
    return events


def project_balance(
    snapshot: LedgerSnapshot, today: date, months: int = 6
) -> list[ProjectionPoint]:
    period = projection_period(today, months)
    running = snapshot.balance_cents()
    points = [ProjectionPoint(date=today, balance_cents=running)]
    for event in reconcile_events(snapshot, period):
        running += event.amount_cents
        points.append(
            ProjectionPoint(
                date=event.date,
                balance_cents=running,
                label=event.label,
                amount_cents=event.amount_cents,
            )
        )
    return points


def monthly_report(snapshot: LedgerSnapshot, year: int, month: int) -> list[Event]:
    period = month_period(year, month)
    actuals: list[Event] = []
    for txn in snapshot.transactions:
        txn_date = require_date(txn.date, f"Transaction {txn.id}")
        if not period.contains(txn_date):
            continue
        if _status_of(txn) == TransactionStatus.skipped:
            continue
        actuals.append(_transaction_event(txn, txn_date))

    ghosts = [event for event in reconcile_events(snapshot, period) if event.is_ghost]
    merged = actuals + ghosts
    merged.sort(key=lambda event: event.date)
    return merged


def summarize(events: Iterable[Event]) -> dict[str, int]:
    income = 0
    expenses = 0
    for event in events:
        if event.amount_cents > 0:
            income += event.amount_cents
        else:
            expenses += event.amount_cents
    return {
        "income_cents": income,
        "expense_cents": expenses,
        "net_cents": income + expenses,
    }


def spending_by_category(events: Iterable[Event]) -> list[dict[str, Optional[int]]]:
    """Expense magnitude per category, largest first.

    Expenses without a category collect under ``category_id`` None.
    """
    totals: dict[Optional[int], int] = {}
    for event in events:
        if event.amount_cents >= 0:
            continue
        totals[event.category_id] = totals.get(event.category_id, 0) - event.amount_cents
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [
        {"category_id": category_id, "total_cents": total}
        for category_id, total in ranked
    ]
