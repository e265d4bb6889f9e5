import datetime as dt
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import TransactionStatus, TransactionType


class CategoryIn(BaseModel):
    label: str = Field(..., min_length=1, max_length=50)
    type: TransactionType
    color: str = Field(default="#6366f1", max_length=20)
    icon: str = Field(default="Circle", max_length=50)


class CategoryUpdate(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=50)
    type: Optional[TransactionType] = None
    color: Optional[str] = Field(default=None, max_length=20)
    icon: Optional[str] = Field(default=None, max_length=50)


class TransactionIn(BaseModel):
    """A transaction as entered: ``amount_cents`` is a magnitude, ``type`` decides the sign."""

    label: str = Field(..., min_length=1, max_length=100)
    amount_cents: int
    date: date
    type: TransactionType
    category_id: Optional[int] = None
    category: Optional[str] = Field(default=None, max_length=50)
    status: TransactionStatus = TransactionStatus.confirmed
    recurring_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = None
    date: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    status: Optional[TransactionStatus] = None
    recurring_id: Optional[int] = None


class RecurringItemIn(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    category_id: Optional[int] = None
    day_of_month: int = Field(..., ge=1, le=31)
    start_date: Optional[date] = None
    duration_months: Optional[int] = Field(default=None, ge=1)
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def _duration_needs_start(self) -> "RecurringItemIn":
        if self.duration_months is not None and self.start_date is None:
            raise ValueError("duration_months requires start_date")
        return self


class RecurringItemUpdate(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    start_date: Optional[date] = None
    duration_months: Optional[int] = Field(default=None, ge=1)
    end_date: Optional[date] = None


class PlannedItemIn(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    amount_cents: int
    date: date
    type: TransactionType
    category_id: Optional[int] = None


class SavingsGoalIn(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    target_cents: int = Field(..., ge=0)
    current_cents: int = 0
    deadline: Optional[date] = None


class SavingsProgressIn(BaseModel):
    current_cents: int


class SettingIn(BaseModel):
    key: str = Field(..., min_length=1, max_length=50)
    value: Any = None


class BalanceEditIn(BaseModel):
    balance_cents: int


class RealizeOccurrenceIn(BaseModel):
    """Turn a projected occurrence into a stored transaction.

    Omitted fields fall back to the recurring item's own values.
    """

    model_config = ConfigDict(extra="forbid")

    date: date
    label: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = None
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    status: TransactionStatus = TransactionStatus.confirmed

    @model_validator(mode="after")
    def _status_is_real(self) -> "RealizeOccurrenceIn":
        if self.status == TransactionStatus.skipped:
            raise ValueError("Use the skip command to dismiss an occurrence")
        return self


class SkipOccurrenceIn(BaseModel):
    date: date
