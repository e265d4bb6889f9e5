from __future__ import annotations

import json
import logging
from datetime import date
from typing import Any, Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from config import get_settings
from forecast import (
    Event,
    LedgerSnapshot,
    ProjectionPoint,
    back_solve_initial_balance,
    monthly_report,
    project_balance,
    reconcile_events,
    recurring_status,
    spending_by_category,
    summarize,
)
from models import (
    Category,
    PlannedItem,
    RecurringItem,
    SavingsGoal,
    Setting,
    Transaction,
    TransactionStatus,
    TransactionType,
    signed_cents,
)
from periods import Period, month_period
from recurrence import (
    ReconciliationError,
    expand_occurrences,
    local_today,
    occurrence_in_month,
)
from schemas import (
    CategoryIn,
    CategoryUpdate,
    PlannedItemIn,
    RealizeOccurrenceIn,
    RecurringItemIn,
    RecurringItemUpdate,
    SavingsGoalIn,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

INITIAL_BALANCE_KEY = "initialBalance"
LAST_BACKUP_KEY = "last_backup"

DEFAULT_CATEGORIES = [
    ("Housing", TransactionType.expense, "#f43f5e", "Home"),
    ("Groceries", TransactionType.expense, "#f59e0b", "ShoppingCart"),
    ("Transport", TransactionType.expense, "#3b82f6", "Car"),
    ("Leisure", TransactionType.expense, "#8b5cf6", "Gamepad2"),
    ("Salary", TransactionType.income, "#10b981", "Banknote"),
    ("Misc", TransactionType.expense, "#64748b", "MoreHorizontal"),
]


class NotFoundError(ValueError):
    pass


class CategoryAmbiguous(ValueError):
    pass


def seed_default_categories(session: Session) -> int:
    count = session.execute(select(func.count(Category.id))).scalar_one() or 0
    if count:
        return 0
    for label, txn_type, color, icon in DEFAULT_CATEGORIES:
        session.add(Category(label=label, type=txn_type, color=color, icon=icon))
    session.commit()
    logger.info(f"categories_seeded: count={len(DEFAULT_CATEGORIES)}")
    return len(DEFAULT_CATEGORIES)


def find_month_claim(
    session: Session,
    recurring_id: int,
    on: date,
    exclude_id: Optional[int] = None,
) -> Optional[Transaction]:
    # reads the store, never a snapshot
    period = month_period(on.year, on.month)
    stmt = select(Transaction).where(
        Transaction.recurring_id == recurring_id,
        Transaction.date >= period.start,
        Transaction.date < period.end,
    )
    if exclude_id is not None:
        stmt = stmt.where(Transaction.id != exclude_id)
    return session.scalar(stmt.order_by(Transaction.id).limit(1))


def ensure_month_unclaimed(
    session: Session,
    recurring_id: int,
    on: date,
    exclude_id: Optional[int] = None,
) -> None:
    existing = find_month_claim(session, recurring_id, on, exclude_id)
    if existing is not None:
        raise ValueError(
            f"Recurring item already claimed for {on:%Y-%m} "
            f"by transaction {existing.id}"
        )


def load_snapshot(session: Session) -> LedgerSnapshot:
    transactions = session.scalars(select(Transaction).order_by(Transaction.id)).all()
    recurring = session.scalars(select(RecurringItem).order_by(RecurringItem.id)).all()
    planned = session.scalars(select(PlannedItem).order_by(PlannedItem.id)).all()
    return LedgerSnapshot(
        transactions=tuple(transactions),
        recurring_items=tuple(recurring),
        planned_items=tuple(planned),
        initial_balance_cents=SettingService(session).initial_balance_cents(),
    )


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.label)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        self._ensure_label_free(data.label)
        category = Category(
            label=data.label.strip(),
            type=data.type,
            color=data.color,
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        fields = data.model_dump(exclude_unset=True, exclude_none=True)
        if "label" in fields:
            self._ensure_label_free(fields["label"], exclude_id=category.id)
            fields["label"] = fields["label"].strip()
        for key, value in fields.items():
            setattr(category, key, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        for model in (Transaction, RecurringItem, PlannedItem):
            self.session.execute(
                update(model)
                .where(model.category_id == category.id)
                .values(category_id=None)
            )
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: id={category_id}")

    def resolve_label(
        self, label: str, txn_type: TransactionType
    ) -> Optional[Category]:
        """Find the category a free-text label refers to.

        Exact case-insensitive matches win; otherwise a single category
        within one edit of the label is accepted.
        """
        wanted = label.strip().lower()
        if not wanted:
            return None
        candidates = self.session.scalars(
            select(Category).where(Category.type == txn_type)
        ).all()
        for category in candidates:
            if category.label.strip().lower() == wanted:
                return category

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in candidates:
            dist = int(Levenshtein.distance(wanted, category.label.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is None or best_distance > 1:
            return None
        if len(best) > 1:
            options = ", ".join(sorted(c.label for c in best))
            raise CategoryAmbiguous(
                f"Category '{label}' is ambiguous; matches: {options}"
            )
        return best[0]

    def _ensure_label_free(self, label: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Category).where(
            func.lower(Category.label) == label.strip().lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValueError("Category with this label already exists")


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Transaction]:
        stmt = select(Transaction).order_by(Transaction.date, Transaction.id)
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        category_id = data.category_id
        if category_id is not None:
            self._check_category(category_id, data.type)
        elif data.category:
            match = CategoryService(self.session).resolve_label(data.category, data.type)
            if match is None:
                logger.info(f"category_unresolved: label={data.category!r}")
            else:
                category_id = match.id
        if data.recurring_id is not None:
            self._check_recurring(data.recurring_id)
            ensure_month_unclaimed(self.session, data.recurring_id, data.date)

        if data.status == TransactionStatus.skipped:
            amount_cents = 0
        else:
            amount_cents = signed_cents(data.type, data.amount_cents)

        txn = Transaction(
            label=data.label.strip(),
            amount_cents=amount_cents,
            date=data.date,
            type=data.type,
            category_id=category_id,
            status=data.status,
            recurring_id=data.recurring_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} status={txn.status.value} "
            f"recurring_id={txn.recurring_id}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_dump(exclude_unset=True)

        new_type = fields.get("type") or txn.type
        category_id = fields.get("category_id", txn.category_id)
        if category_id is not None:
            self._check_category(category_id, new_type)
        if fields.get("recurring_id") is not None:
            self._check_recurring(fields["recurring_id"])
        recurring_id = fields.get("recurring_id", txn.recurring_id)
        new_date = fields.get("date") or txn.date
        if recurring_id is not None and (
            recurring_id != txn.recurring_id or new_date != txn.date
        ):
            ensure_month_unclaimed(self.session, recurring_id, new_date, txn.id)

        if fields.get("amount_cents") is not None or "type" in fields:
            magnitude = fields.get("amount_cents")
            if magnitude is None:
                magnitude = abs(txn.amount_cents)
            txn.amount_cents = signed_cents(new_type, magnitude)
        txn.type = new_type
        txn.category_id = category_id
        for key in ("label", "date", "status"):
            if fields.get(key) is not None:
                setattr(txn, key, fields[key])
        if "recurring_id" in fields:
            txn.recurring_id = fields["recurring_id"]
        if txn.status == TransactionStatus.skipped:
            txn.amount_cents = 0

        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: id={transaction_id}")

    def _check_category(self, category_id: int, txn_type: TransactionType) -> None:
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Category not found")
        if category.type != txn_type:
            raise ValueError("Category type mismatch")

    def _check_recurring(self, recurring_id: int) -> None:
        if not self.session.get(RecurringItem, recurring_id):
            raise ValueError("Recurring item not found")


class RecurringItemService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[RecurringItem]:
        stmt = select(RecurringItem).order_by(
            RecurringItem.day_of_month, RecurringItem.id
        )
        return self.session.scalars(stmt).all()

    def get(self, item_id: int) -> RecurringItem:
        item = self.session.get(RecurringItem, item_id)
        if not item:
            raise NotFoundError("Recurring item not found")
        return item

    def create(self, data: RecurringItemIn) -> RecurringItem:
        if data.category_id is not None:
            self._check_category(data.category_id, data.type)
        item = RecurringItem(**data.model_dump())
        item.label = item.label.strip()
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        logger.info(f"recurring_created: id={item.id} day={item.day_of_month}")
        return item

    def update(self, item_id: int, data: RecurringItemUpdate) -> RecurringItem:
        item = self.get(item_id)
        fields = data.model_dump(exclude_unset=True)
        for key in ("label", "amount_cents", "type", "day_of_month"):
            if key in fields and fields[key] is None:
                del fields[key]

        new_type = fields.get("type", item.type)
        category_id = fields.get("category_id", item.category_id)
        if category_id is not None:
            self._check_category(category_id, new_type)
        start_date = fields.get("start_date", item.start_date)
        duration = fields.get("duration_months", item.duration_months)
        if duration is not None and start_date is None:
            raise ValueError("duration_months requires start_date")

        for key, value in fields.items():
            setattr(item, key, value)
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, item_id: int) -> None:
        item = self.get(item_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.recurring_id == item.id)
            .values(recurring_id=None)
        )
        self.session.delete(item)
        self.session.commit()
        logger.info(f"recurring_deleted: id={item_id}")

    def _check_category(self, category_id: int, txn_type: TransactionType) -> None:
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Category not found")
        if category.type != txn_type:
            raise ValueError("Category type mismatch")


class PlannedItemService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[PlannedItem]:
        stmt = select(PlannedItem).order_by(PlannedItem.date, PlannedItem.id)
        return self.session.scalars(stmt).all()

    def create(self, data: PlannedItemIn) -> PlannedItem:
        if data.category_id is not None and not self.session.get(
            Category, data.category_id
        ):
            raise ValueError("Category not found")
        item = PlannedItem(
            label=data.label.strip(),
            amount_cents=signed_cents(data.type, data.amount_cents),
            date=data.date,
            type=data.type,
            category_id=data.category_id,
        )
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, item_id: int) -> None:
        item = self.session.get(PlannedItem, item_id)
        if not item:
            raise NotFoundError("Planned item not found")
        self.session.delete(item)
        self.session.commit()


class SavingsGoalService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[SavingsGoal]:
        stmt = select(SavingsGoal).order_by(SavingsGoal.deadline, SavingsGoal.id)
        return self.session.scalars(stmt).all()

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        goal = SavingsGoal(**data.model_dump())
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update_progress(self, goal_id: int, current_cents: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal:
            raise NotFoundError("Savings goal not found")
        goal.current_cents = current_cents
        self.session.commit()
        self.session.refresh(goal)
        return goal


class SettingService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str) -> Any:
        setting = self.session.get(Setting, key)
        if setting is None:
            return None
        return json.loads(setting.value)

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        setting = self.session.get(Setting, key)
        if setting is None:
            self.session.add(Setting(key=key, value=encoded))
        else:
            setting.value = encoded
        self.session.commit()

    def initial_balance_cents(self) -> int:
        try:
            value = self.get(INITIAL_BALANCE_KEY)
        except json.JSONDecodeError as exc:
            raise ReconciliationError("Stored initialBalance is not valid JSON") from exc
        if value is None:
            return 0
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ReconciliationError(f"Stored initialBalance is invalid: {value!r}")
        try:
            return int(value)
        except ValueError as exc:
            raise ReconciliationError(
                f"Stored initialBalance is invalid: {value!r}"
            ) from exc

    def set_initial_balance(self, amount_cents: int) -> None:
        self.set(INITIAL_BALANCE_KEY, int(amount_cents))


class BalanceService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = SettingService(session)

    def confirmed_total_cents(self) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            or_(
                Transaction.status == TransactionStatus.confirmed,
                Transaction.status.is_(None),
            )
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def current_balance(self) -> int:
        return self.settings.initial_balance_cents() + self.confirmed_total_cents()

    def set_current_balance(self, balance_cents: int) -> int:
        initial = self.settings.initial_balance_cents()
        new_initial = back_solve_initial_balance(
            balance_cents, self.current_balance(), initial
        )
        self.settings.set_initial_balance(new_initial)
        logger.info(
            f"initial_balance_adjusted: old={initial} new={new_initial} "
            f"target_balance={balance_cents}"
        )
        return new_initial


class ForecastService:
    """Read-only views over one ledger snapshot taken at construction."""

    def __init__(
        self, session: Session, snapshot: Optional[LedgerSnapshot] = None
    ) -> None:
        self.session = session
        self.snapshot = snapshot if snapshot is not None else load_snapshot(session)

    def refresh(self) -> None:
        self.snapshot = load_snapshot(self.session)

    def balance_cents(self) -> int:
        return self.snapshot.balance_cents()

    def events(self, period: Period) -> list[Event]:
        return reconcile_events(self.snapshot, period)

    def projection(
        self, months: Optional[int] = None, today: Optional[date] = None
    ) -> list[ProjectionPoint]:
        if months is None:
            months = get_settings().projection_months
        today = today or local_today()
        return project_balance(self.snapshot, today, months)

    def monthly_report(self, year: int, month: int) -> list[Event]:
        return monthly_report(self.snapshot, year, month)

    def monthly_summary(self, year: int, month: int) -> dict[str, int]:
        return summarize(self.monthly_report(year, month))

    def monthly_spending(
        self, year: int, month: int
    ) -> list[dict[str, Optional[int]]]:
        return spending_by_category(self.monthly_report(year, month))

    def recurring_status(self, item_id: int, year: int, month: int) -> Optional[str]:
        return recurring_status(self.snapshot, item_id, year, month)

    def is_paid_this_month(self, item_id: int, today: Optional[date] = None) -> bool:
        today = today or local_today()
        return self.recurring_status(item_id, today.year, today.month) == "paid"

    def is_skipped_this_month(
        self, item_id: int, today: Optional[date] = None
    ) -> bool:
        today = today or local_today()
        return (
            self.recurring_status(item_id, today.year, today.month)
            == TransactionStatus.skipped.value
        )


class OccurrenceService:
    """Commands that settle a projected recurring occurrence for its month."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def realize(self, item_id: int, data: RealizeOccurrenceIn) -> Transaction:
        item = self._open_occurrence(item_id, data.date)
        txn_type = data.type or item.type
        category_id = data.category_id
        if category_id is None and item.category_id is not None:
            if item.category and item.category.type == txn_type:
                category_id = item.category_id
        amount_cents = (
            data.amount_cents if data.amount_cents is not None else item.amount_cents
        )
        txn = TransactionService(self.session).create(
            TransactionIn(
                label=data.label or item.label,
                amount_cents=amount_cents,
                date=data.date,
                type=txn_type,
                category_id=category_id,
                status=data.status,
                recurring_id=item.id,
            )
        )
        logger.info(
            f"occurrence_realized: recurring_id={item.id} month={data.date:%Y-%m} "
            f"transaction_id={txn.id}"
        )
        return txn

    def skip(self, item_id: int, on: date) -> Transaction:
        item = self._open_occurrence(item_id, on)
        occurrence = occurrence_in_month(item, on.year, on.month)
        txn = TransactionService(self.session).create(
            TransactionIn(
                label=item.label,
                amount_cents=0,
                date=occurrence,
                type=item.type,
                category_id=item.category_id
                if item.category and item.category.type == item.type
                else None,
                status=TransactionStatus.skipped,
                recurring_id=item.id,
            )
        )
        logger.info(
            f"occurrence_skipped: recurring_id={item.id} month={on:%Y-%m} "
            f"transaction_id={txn.id}"
        )
        return txn

    def mark_paid(self, item_id: int, paid_on: Optional[date] = None) -> Transaction:
        paid_on = paid_on or local_today()
        return self.realize(
            item_id,
            RealizeOccurrenceIn(date=paid_on, status=TransactionStatus.confirmed),
        )

    def _open_occurrence(self, item_id: int, on: date) -> RecurringItem:
        item = RecurringItemService(self.session).get(item_id)
        period = month_period(on.year, on.month)
        if not expand_occurrences(item, period):
            raise ValueError(f"Recurring item is not active in {on:%Y-%m}")
        ensure_month_unclaimed(self.session, item.id, on)
        return item
