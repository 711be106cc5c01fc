from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    BudgetStatus,
    NotificationKind,
    RecurrenceFrequency,
    RecurringStatus,
    TransactionType,
)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=7)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    color: Optional[str]


class TransactionIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: int
    transaction_date: date
    payment_method: Optional[str] = Field(default=None, max_length=40)


class TransactionUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    category_id: Optional[int] = None
    transaction_date: Optional[date] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str]
    type: TransactionType
    amount_cents: int
    category_id: int
    transaction_date: date
    payment_method: Optional[str]
    origin_template_id: Optional[int]
    occurrence_date: Optional[date]


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    category_id: Optional[int] = None
    limit_cents: int = Field(..., ge=0)
    start_date: date
    end_date: date
    threshold_percent: int = Field(default=80, ge=1, le=100)

    @model_validator(mode="after")
    def _period_in_order(self) -> "BudgetIn":
        if self.start_date > self.end_date:
            raise ValueError("Start date must be before end date")
        return self


class BudgetOut(BaseModel):
    id: int
    name: str
    description: Optional[str]
    category_id: Optional[int]
    category_name: str
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    percent_used: Decimal
    status: BudgetStatus
    start_date: date
    end_date: date
    threshold_percent: int
    last_alert_sent_at: Optional[datetime]
    is_period_active: bool
    is_threshold_reached: bool
    created_at: datetime
    updated_at: datetime


class RecurringTransactionIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    amount_cents: int = Field(..., gt=0)
    type: TransactionType
    category_id: int
    frequency: RecurrenceFrequency
    start_date: date
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def _end_after_start(self) -> "RecurringTransactionIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class RecurringTransactionUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    end_date: Optional[date] = None


class RecurringTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str]
    amount_cents: int
    type: TransactionType
    category_id: int
    frequency: RecurrenceFrequency
    start_date: date
    end_date: Optional[date]
    last_generated_date: Optional[date]
    next_execution_date: date
    status: RecurringStatus
    days_until_next_execution: Optional[int] = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    message: str
    kind: NotificationKind
    is_read: bool
    created_at: datetime


class SweepOut(BaseModel):
    processed: int
    failed: int


class GenerationOut(BaseModel):
    generated: int
    completed: int
    failed: int
