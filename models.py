from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionStatus(str, Enum):
    confirmed = "confirmed"
    planned = "planned"
    skipped = "skipped"


def signed_cents(txn_type: TransactionType, amount_cents: int) -> int:
    """Apply the sign implied by ``txn_type`` to the magnitude of ``amount_cents``."""
    magnitude = abs(int(amount_cents))
    return -magnitude if txn_type == TransactionType.expense else magnitude


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    color: Mapped[str] = mapped_column(String(20), nullable=False, default="#6366f1")
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="Circle")

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )
    recurring_items: Mapped[list["RecurringItem"]] = relationship(
        "RecurringItem", back_populates="category"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    status: Mapped[Optional[TransactionStatus]] = mapped_column(
        SAEnum(TransactionStatus), default=TransactionStatus.confirmed
    )
    recurring_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_items.id", ondelete="SET NULL")
    )

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    recurring_item: Mapped[Optional["RecurringItem"]] = relationship(
        "RecurringItem", back_populates="transactions"
    )

    @property
    def category_label(self) -> Optional[str]:
        return self.category.label if self.category else None

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_recurring_date", "recurring_id", "date"),
        CheckConstraint(
            "(type = 'expense' AND amount_cents <= 0)"
            " OR (type = 'income' AND amount_cents >= 0)",
            name="ck_transactions_amount_sign",
        ),
    )


class RecurringItem(Base, TimestampMixin):
    __tablename__ = "recurring_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    day_of_month: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    duration_months: Mapped[Optional[int]] = mapped_column(Integer)
    end_date: Mapped[Optional[date]] = mapped_column(Date)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="recurring_items"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurring_item"
    )

    @property
    def category_label(self) -> Optional[str]:
        return self.category.label if self.category else None

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_recurring_amount_positive"),
        CheckConstraint(
            "day_of_month BETWEEN 1 AND 31", name="ck_recurring_day_of_month"
        ),
    )


class PlannedItem(Base, TimestampMixin):
    __tablename__ = "planned_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )

    category: Mapped[Optional["Category"]] = relationship("Category")

    @property
    def status(self) -> TransactionStatus:
        return TransactionStatus.planned

    __table_args__ = (Index("ix_planned_items_date", "date"),)


class SavingsGoal(Base, TimestampMixin):
    __tablename__ = "savings_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deadline: Mapped[Optional[date]] = mapped_column(Date)

    @property
    def progress(self) -> float:
        if not self.target_cents or self.target_cents <= 0:
            return 0.0
        ratio = (self.current_cents or 0) / self.target_cents
        return min(1.0, max(0.0, ratio))

    __table_args__ = (
        CheckConstraint("target_cents >= 0", name="ck_savings_target_positive"),
    )


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
