"""Pydantic schemas for the expenses module."""
import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from intranet.core.config import settings


class StatisticsPeriod(str, Enum):
    """Trailing windows for statistics."""
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


# =============================================================================
# Request Schemas
# =============================================================================

def _date_only(value: Any) -> Any:
    """Reduce an ISO-8601 datetime to its calendar date."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, str):
        try:
            return dt.datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            return value
    return value


class ExpenseCreate(BaseModel):
    """Fields for a new draft expense (sent as multipart form data)."""
    amount: Decimal = Field(gt=0)
    currency: str = Field(default=settings.DEFAULT_CURRENCY, min_length=3, max_length=3)
    date: dt.date
    description: str = Field(min_length=1)
    category: str = Field(min_length=1)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("date", mode="before")
    @classmethod
    def date_only(cls, v: Any) -> Any:
        return _date_only(v)


class ExpenseUpdate(BaseModel):
    """Partial update of a draft expense. Unset fields are left alone."""
    amount: Decimal | None = Field(default=None, gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    date: dt.date | None = None
    description: str | None = Field(default=None, min_length=1)
    category: str | None = Field(default=None, min_length=1)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str | None) -> str | None:
        return v.upper() if v else v

    @field_validator("date", mode="before")
    @classmethod
    def date_only(cls, v: Any) -> Any:
        return _date_only(v)


class ReviewRequest(BaseModel):
    """Reviewer decision on a submitted expense."""
    action: Literal["approve", "reject"]
    comments: str | None = None


class PaymentRequest(BaseModel):
    """Payment confirmation for an approved expense."""
    payment_details: str | None = Field(default=None, alias="paymentDetails")

    class Config:
        populate_by_name = True


# =============================================================================
# Response Schemas
# =============================================================================

class ExpenseResponse(BaseModel):
    """Expense with owner, manager and approver names."""
    id: UUID
    user_id: UUID
    amount: Decimal
    currency: str
    date: dt.date
    description: str
    category: str
    receipt_path: str | None = None
    status: str
    submitted_at: dt.datetime | None = None
    approved_by: UUID | None = None
    approved_at: dt.datetime | None = None
    paid_at: dt.datetime | None = None
    payment_details: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None
    user_name: str | None = None
    user_email: str | None = None
    user_manager_id: UUID | None = None
    manager_name: str | None = None
    approver_name: str | None = None

    class Config:
        from_attributes = True


class ApprovalResponse(BaseModel):
    """One approval record."""
    id: UUID
    expense_id: UUID
    approver_id: UUID
    level: int
    status: str
    comments: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None
    approver_name: str | None = None
    approver_email: str | None = None

    class Config:
        from_attributes = True


class ExpenseDetailResponse(ExpenseResponse):
    """Expense with its approval history."""
    approvals: list[ApprovalResponse] = []


class Pagination(BaseModel):
    """Pagination metadata for list responses."""
    total: int
    per_page: int
    current_page: int
    last_page: int
    from_: int = Field(alias="from")
    to: int

    class Config:
        populate_by_name = True


class StatusAggregate(BaseModel):
    status: str
    count: int
    total_amount: Decimal


class CategoryAggregate(BaseModel):
    category: str
    count: int
    total_amount: Decimal


class TrendPoint(BaseModel):
    month: str
    count: int
    total_amount: Decimal


class StatisticsTotals(BaseModel):
    total_count: int
    total_amount: Decimal
    average_amount: Decimal | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None


class ExpenseStatistics(BaseModel):
    """Aggregates over one trailing window."""
    period: StatisticsPeriod
    start_date: dt.date = Field(alias="startDate")
    by_status: list[StatusAggregate] = Field(alias="byStatus")
    by_category: list[CategoryAggregate] = Field(alias="byCategory")
    trends: list[TrendPoint]
    totals: StatisticsTotals

    class Config:
        populate_by_name = True


# =============================================================================
# Envelopes
# =============================================================================

class ExpenseEnvelope(BaseModel):
    success: bool = True
    data: ExpenseResponse
    message: str | None = None


class ExpenseDetailEnvelope(BaseModel):
    success: bool = True
    data: ExpenseDetailResponse
    message: str | None = None


class ExpenseListEnvelope(BaseModel):
    success: bool = True
    data: list[ExpenseResponse]
    pagination: Pagination


class StatisticsEnvelope(BaseModel):
    success: bool = True
    data: ExpenseStatistics


class CategoriesEnvelope(BaseModel):
    success: bool = True
    data: list[str]


class MessageEnvelope(BaseModel):
    success: bool = True
    message: str
    data: Any | None = None
