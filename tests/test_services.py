from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Category, Setting, Transaction, TransactionStatus, TransactionType
from recurrence import ReconciliationError
from schemas import (
    CategoryIn,
    PlannedItemIn,
    RealizeOccurrenceIn,
    RecurringItemIn,
    RecurringItemUpdate,
    SavingsGoalIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    BalanceService,
    CategoryAmbiguous,
    CategoryService,
    ForecastService,
    NotFoundError,
    OccurrenceService,
    PlannedItemService,
    RecurringItemService,
    SavingsGoalService,
    SettingService,
    TransactionService,
    load_snapshot,
    seed_default_categories,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _expense(label="Coffee", amount=350, on=date(2024, 3, 3), **kwargs) -> TransactionIn:
    return TransactionIn(
        label=label,
        amount_cents=amount,
        date=on,
        type=TransactionType.expense,
        **kwargs,
    )


def _netflix(session: Session, **kwargs):
    fields = {
        "label": "Netflix",
        "amount_cents": 1500,
        "type": TransactionType.expense,
        "day_of_month": 5,
    }
    fields.update(kwargs)
    return RecurringItemService(session).create(RecurringItemIn(**fields))


def test_seed_default_categories_runs_once():
    with _session() as session:
        assert seed_default_categories(session) == 6
        assert seed_default_categories(session) == 0
        labels = {c.label for c in CategoryService(session).list_all()}
        assert {"Groceries", "Salary"} <= labels


def test_create_normalizes_sign():
    with _session() as session:
        service = TransactionService(session)
        expense = service.create(_expense(amount=5000))
        income = service.create(
            TransactionIn(
                label="Refund",
                amount_cents=-5000,
                date=date(2024, 3, 3),
                type=TransactionType.income,
            )
        )
        assert expense.amount_cents == -5000
        assert income.amount_cents == 5000
        assert expense.status == TransactionStatus.confirmed


def test_skipped_transaction_forces_zero_amount():
    with _session() as session:
        txn = TransactionService(session).create(
            _expense(amount=5000, status=TransactionStatus.skipped)
        )
        assert txn.amount_cents == 0


def test_partial_update_renormalizes_sign():
    with _session() as session:
        service = TransactionService(session)
        txn = service.create(_expense(amount=5000))

        updated = service.update(txn.id, TransactionUpdate(amount_cents=7000))
        assert updated.amount_cents == -7000
        assert updated.label == "Coffee"

        flipped = service.update(txn.id, TransactionUpdate(type=TransactionType.income))
        assert flipped.amount_cents == 7000

        renamed = service.update(txn.id, TransactionUpdate(label="Refund"))
        assert renamed.amount_cents == 7000
        assert renamed.date == date(2024, 3, 3)


def test_update_missing_transaction_raises_not_found():
    with _session() as session:
        with pytest.raises(NotFoundError):
            TransactionService(session).update(999, TransactionUpdate(label="x"))
        with pytest.raises(NotFoundError):
            TransactionService(session).delete(999)


def test_category_type_mismatch_is_rejected():
    with _session() as session:
        seed_default_categories(session)
        salary = next(
            c for c in CategoryService(session).list_all() if c.label == "Salary"
        )
        with pytest.raises(ValueError):
            TransactionService(session).create(_expense(category_id=salary.id))


def test_category_label_resolution():
    with _session() as session:
        seed_default_categories(session)
        service = TransactionService(session)

        exact = service.create(_expense(category="groceries"))
        assert exact.category_label == "Groceries"

        typo = service.create(_expense(category="Grocerie"))
        assert typo.category_label == "Groceries"

        unknown = service.create(_expense(category="Vacation"))
        assert unknown.category_id is None


def test_ambiguous_category_label_is_rejected():
    with _session() as session:
        categories = CategoryService(session)
        categories.create(CategoryIn(label="Car", type=TransactionType.expense))
        categories.create(CategoryIn(label="Cat", type=TransactionType.expense))
        with pytest.raises(CategoryAmbiguous):
            categories.resolve_label("Cax", TransactionType.expense)


def test_duplicate_category_label_is_rejected():
    with _session() as session:
        categories = CategoryService(session)
        categories.create(CategoryIn(label="Pets", type=TransactionType.expense))
        with pytest.raises(ValueError):
            categories.create(CategoryIn(label=" pets ", type=TransactionType.expense))


def test_category_delete_nulls_references():
    with _session() as session:
        categories = CategoryService(session)
        pets = categories.create(CategoryIn(label="Pets", type=TransactionType.expense))
        txn = TransactionService(session).create(_expense(category_id=pets.id))
        rule = _netflix(session, category_id=pets.id)
        planned = PlannedItemService(session).create(
            PlannedItemIn(
                label="Vet",
                amount_cents=9000,
                date=date(2024, 4, 1),
                type=TransactionType.expense,
                category_id=pets.id,
            )
        )

        categories.delete(pets.id)
        session.expire_all()

        assert session.get(Transaction, txn.id).category_id is None
        assert RecurringItemService(session).get(rule.id).category_id is None
        assert PlannedItemService(session).list_all()[0].id == planned.id
        assert PlannedItemService(session).list_all()[0].category_id is None
        assert session.get(Category, pets.id) is None


def test_recurring_schema_validation():
    with pytest.raises(ValidationError):
        RecurringItemIn(
            label="Rent", amount_cents=1000, type=TransactionType.expense, day_of_month=32
        )
    with pytest.raises(ValidationError):
        RecurringItemIn(
            label="Rent",
            amount_cents=1000,
            type=TransactionType.expense,
            day_of_month=1,
            duration_months=3,
        )


def test_recurring_update_keeps_duration_rule():
    with _session() as session:
        rule = _netflix(session)
        with pytest.raises(ValueError):
            RecurringItemService(session).update(
                rule.id, RecurringItemUpdate(duration_months=3)
            )
        updated = RecurringItemService(session).update(
            rule.id,
            RecurringItemUpdate(start_date=date(2024, 1, 1), duration_months=3),
        )
        assert updated.duration_months == 3


def test_recurring_delete_detaches_transactions():
    with _session() as session:
        rule = _netflix(session)
        txn = OccurrenceService(session).mark_paid(rule.id, date(2024, 3, 5))
        RecurringItemService(session).delete(rule.id)
        session.expire_all()
        assert session.get(Transaction, txn.id).recurring_id is None


def test_realize_uses_rule_defaults_and_overrides():
    with _session() as session:
        rule = _netflix(session)
        occurrences = OccurrenceService(session)

        txn = occurrences.realize(rule.id, RealizeOccurrenceIn(date=date(2024, 3, 6)))
        assert txn.label == "Netflix"
        assert txn.amount_cents == -1500
        assert txn.recurring_id == rule.id

        bumped = occurrences.realize(
            rule.id,
            RealizeOccurrenceIn(
                date=date(2024, 4, 5),
                amount_cents=1700,
                status=TransactionStatus.planned,
            ),
        )
        assert bumped.amount_cents == -1700
        assert bumped.status == TransactionStatus.planned


def test_realize_rejects_skipped_status():
    with pytest.raises(ValidationError):
        RealizeOccurrenceIn(date=date(2024, 3, 5), status=TransactionStatus.skipped)


def test_skip_writes_zero_tombstone_on_occurrence_date():
    with _session() as session:
        rule = _netflix(session, day_of_month=31)
        txn = OccurrenceService(session).skip(rule.id, date(2024, 2, 1))
        assert txn.amount_cents == 0
        assert txn.status == TransactionStatus.skipped
        assert txn.date == date(2024, 2, 29)

        forecast = ForecastService(session)
        assert forecast.recurring_status(rule.id, 2024, 2) == "skipped"
        assert forecast.is_skipped_this_month(rule.id, today=date(2024, 2, 10))
        assert forecast.monthly_report(2024, 2) == []


def test_second_claim_in_same_month_is_rejected():
    with _session() as session:
        rule = _netflix(session)
        occurrences = OccurrenceService(session)
        occurrences.mark_paid(rule.id, date(2024, 3, 5))
        with pytest.raises(ValueError, match="already claimed"):
            occurrences.skip(rule.id, date(2024, 3, 20))
        with pytest.raises(ValueError, match="already claimed"):
            occurrences.mark_paid(rule.id, date(2024, 3, 1))
        assert ForecastService(session).is_paid_this_month(
            rule.id, today=date(2024, 3, 31)
        )


def test_transaction_cannot_claim_a_settled_month():
    with _session() as session:
        rule = _netflix(session)
        OccurrenceService(session).skip(rule.id, date(2024, 3, 5))
        transactions = TransactionService(session)
        with pytest.raises(ValueError, match="already claimed"):
            transactions.create(
                _expense(label="Netflix", amount=1500, on=date(2024, 3, 6), recurring_id=rule.id)
            )

        coffee = transactions.create(_expense(on=date(2024, 3, 9)))
        with pytest.raises(ValueError, match="already claimed"):
            transactions.update(coffee.id, TransactionUpdate(recurring_id=rule.id))

        april = transactions.create(
            _expense(label="Netflix", amount=1500, on=date(2024, 4, 5), recurring_id=rule.id)
        )
        moved = transactions.update(april.id, TransactionUpdate(date=date(2024, 4, 7)))
        assert moved.date == date(2024, 4, 7)
        with pytest.raises(ValueError, match="already claimed"):
            transactions.update(april.id, TransactionUpdate(date=date(2024, 3, 20)))

        forecast = ForecastService(session)
        assert forecast.recurring_status(rule.id, 2024, 3) == "skipped"
        assert forecast.recurring_status(rule.id, 2024, 4) == "paid"


def test_occurrence_outside_rule_window_is_rejected():
    with _session() as session:
        rule = _netflix(session, start_date=date(2024, 1, 1), duration_months=2)
        with pytest.raises(ValueError, match="not active"):
            OccurrenceService(session).skip(rule.id, date(2024, 3, 5))
        with pytest.raises(NotFoundError):
            OccurrenceService(session).skip(999, date(2024, 3, 5))


def test_balance_service_matches_snapshot():
    with _session() as session:
        SettingService(session).set_initial_balance(100000)
        transactions = TransactionService(session)
        transactions.create(_expense(label="Rent", amount=20000))
        transactions.create(_expense(amount=900, status=TransactionStatus.planned))
        transactions.create(_expense(amount=900, status=TransactionStatus.skipped))

        balance = BalanceService(session)
        assert balance.current_balance() == 80000
        assert load_snapshot(session).balance_cents() == 80000


def test_set_current_balance_back_solves_initial():
    with _session() as session:
        TransactionService(session).create(_expense(label="Rent", amount=20000))
        balance = BalanceService(session)

        new_initial = balance.set_current_balance(50000)

        assert new_initial == 70000
        assert SettingService(session).initial_balance_cents() == 70000
        assert balance.current_balance() == 50000


def test_projection_scenario_through_services():
    with _session() as session:
        SettingService(session).set_initial_balance(100000)
        TransactionService(session).create(
            _expense(label="Rent", amount=20000, on=date(2024, 3, 1))
        )
        _netflix(session)

        points = ForecastService(session).projection(1, today=date(2024, 3, 2))
        assert points[0].balance_cents == 80000
        assert [(p.label, p.balance) for p in points[1:]] == [("Netflix", 785)]


def test_monthly_summary_through_services():
    with _session() as session:
        TransactionService(session).create(
            TransactionIn(
                label="Salary",
                amount_cents=300000,
                date=date(2024, 3, 1),
                type=TransactionType.income,
            )
        )
        _netflix(session)
        summary = ForecastService(session).monthly_summary(2024, 3)
        assert summary["income_cents"] == 300000
        assert summary["expense_cents"] == -1500


def test_settings_round_trip_json():
    with _session() as session:
        settings = SettingService(session)
        assert settings.get("theme") is None
        settings.set("theme", {"dark": True})
        settings.set("theme", {"dark": False})
        assert settings.get("theme") == {"dark": False}


def test_savings_progress():
    with _session() as session:
        savings = SavingsGoalService(session)
        goal = savings.create(SavingsGoalIn(label="Trip", target_cents=100000))
        assert goal.progress == 0.0

        goal = savings.update_progress(goal.id, 25000)
        assert goal.progress == 0.25

        goal = savings.update_progress(goal.id, 150000)
        assert goal.progress == 1.0

        with pytest.raises(NotFoundError):
            savings.update_progress(999, 1)


@pytest.mark.parametrize("stored", ['"abc"', "not json", "[1]", "true"])
def test_malformed_initial_balance_is_a_reconciliation_error(stored):
    with _session() as session:
        session.add(Setting(key="initialBalance", value=stored))
        session.commit()
        with pytest.raises(ReconciliationError, match="initialBalance"):
            SettingService(session).initial_balance_cents()
        with pytest.raises(ReconciliationError):
            ForecastService(session)


def test_numeric_string_initial_balance_is_accepted():
    with _session() as session:
        SettingService(session).set("initialBalance", "100000")
        assert SettingService(session).initial_balance_cents() == 100000
