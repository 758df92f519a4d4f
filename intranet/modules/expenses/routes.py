"""API routes for the expenses module."""
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.core.auth import get_current_user
from intranet.core.database import get_db
from intranet.core.exceptions import ValidationError
from intranet.modules.directory import Role, UserRef, get_direct_report_ids
from intranet.modules.expenses.models import ExpenseStatus
from intranet.modules.expenses.policy import (
    ExpenseTarget,
    Operation,
    Scope,
    authorize,
    resolve_scope,
)
from intranet.modules.expenses.schemas import (
    ExpenseCreate,
    ExpenseUpdate,
    ReviewRequest,
    PaymentRequest,
    StatisticsPeriod,
    ExpenseEnvelope,
    ExpenseDetailEnvelope,
    ExpenseListEnvelope,
    StatisticsEnvelope,
    CategoriesEnvelope,
    MessageEnvelope,
)
from intranet.modules.expenses.services import ExpenseService, ExpenseFilters, ExpenseSort
from intranet.modules.expenses.statistics import get_statistics
from intranet.modules.expenses.storage import ReceiptStorage, StagedFile, get_receipt_storage

router = APIRouter(prefix="/expenses", tags=["Expenses"])


def get_expense_service(
    storage: ReceiptStorage = Depends(get_receipt_storage),
) -> ExpenseService:
    """Dependency returning an expense service bound to the receipt storage."""
    return ExpenseService(storage)


# =============================================================================
# Helpers
# =============================================================================

def _target(expense: dict[str, Any]) -> ExpenseTarget:
    return ExpenseTarget(
        owner_id=expense["user_id"],
        owner_manager_id=expense.get("user_manager_id"),
    )


def _enum_param(enum_cls, value: str | None, name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {name}. Must be one of: {allowed}")


def _parse_form(model: type[BaseModel], data: dict[str, Any]) -> BaseModel:
    """Validate form fields, reporting failures as a 400."""
    try:
        return model(**data)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Validation error: {details}")


async def _stage_receipt(storage: ReceiptStorage, receipt: UploadFile | None) -> StagedFile | None:
    if receipt is None or not receipt.filename:
        return None
    return await storage.stage(receipt)


async def _scope_for(db: AsyncSession, caller: UserRef, requested_user_id: UUID | None) -> Scope:
    reports = await get_direct_report_ids(db, caller.id) if caller.role == Role.MANAGER else []
    return resolve_scope(caller, requested_user_id, reports)


# =============================================================================
# Collection Routes
# =============================================================================

@router.get("", response_model=ExpenseListEnvelope)
async def list_expenses(
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    status: str | None = None,
    category: str | None = None,
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    min_amount: Decimal | None = Query(None, alias="minAmount"),
    max_amount: Decimal | None = Query(None, alias="maxAmount"),
    user_id: UUID | None = Query(None, alias="userId"),
    sort: str = Query(ExpenseSort.DATE_DESC.value),
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: ExpenseService = Depends(get_expense_service),
):
    """List expenses visible to the caller."""
    sort_key = _enum_param(ExpenseSort, sort, "sort")
    status_filter = _enum_param(ExpenseStatus, status, "status")
    scope = await _scope_for(db, caller, user_id)

    filters = ExpenseFilters(
        user_id=scope.user_id,
        user_ids=scope.user_ids,
        status=status_filter,
        category=category,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    result = await service.list_expenses(db, filters, page=page, limit=limit, sort=sort_key)
    return {"success": True, "data": result["data"], "pagination": result["pagination"]}


@router.get("/statistics", response_model=StatisticsEnvelope)
async def expense_statistics(
    period: str = Query(StatisticsPeriod.MONTH.value),
    user_id: UUID | None = Query(None, alias="userId"),
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Aggregates over a trailing window, scoped like the list."""
    window = _enum_param(StatisticsPeriod, period, "period")
    scope = await _scope_for(db, caller, user_id)
    data = await get_statistics(db, window, user_id=scope.user_id, user_ids=scope.user_ids)
    return {"success": True, "data": data}


@router.get("/categories", response_model=CategoriesEnvelope)
async def expense_categories(
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: ExpenseService = Depends(get_expense_service),
):
    """Currently configured expense categories."""
    return {"success": True, "data": await service.valid_categories(db)}


@router.post("", response_model=ExpenseEnvelope, status_code=201)
async def create_expense(
    amount: str | None = Form(None),
    currency: str | None = Form(None),
    expense_date: str | None = Form(None, alias="date"),
    description: str | None = Form(None),
    category: str | None = Form(None),
    receipt: UploadFile | None = File(None),
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: ReceiptStorage = Depends(get_receipt_storage),
    service: ExpenseService = Depends(get_expense_service),
):
    """Create a draft expense for the caller, with an optional receipt."""
    authorize(caller, Operation.CREATE)

    staged = await _stage_receipt(storage, receipt)
    try:
        data = {
            "amount": amount,
            "currency": currency,
            "date": expense_date,
            "description": description,
            "category": category,
        }
        fields = _parse_form(ExpenseCreate, {k: v for k, v in data.items() if v not in (None, "")})
        expense = await service.create(
            db,
            owner_id=caller.id,
            amount=fields.amount,
            currency=fields.currency,
            expense_date=fields.date,
            description=fields.description,
            category=fields.category,
            receipt_path=storage.reference_for(staged) if staged else None,
        )
    except BaseException:
        storage.discard(staged)
        raise

    return {"success": True, "data": expense, "message": "Expense created successfully"}


# =============================================================================
# Item Routes
# =============================================================================

@router.get("/{expense_id}", response_model=ExpenseDetailEnvelope)
async def get_expense(
    expense_id: UUID,
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: ExpenseService = Depends(get_expense_service),
):
    """Get one expense with its approval history."""
    expense = await service.get(db, expense_id)
    authorize(caller, Operation.READ, _target(expense))
    approvals = await service.get_approvals(db, expense_id)
    return {"success": True, "data": {**expense, "approvals": approvals}}


@router.put("/{expense_id}", response_model=ExpenseEnvelope)
async def update_expense(
    expense_id: UUID,
    amount: str | None = Form(None),
    currency: str | None = Form(None),
    expense_date: str | None = Form(None, alias="date"),
    description: str | None = Form(None),
    category: str | None = Form(None),
    receipt: UploadFile | None = File(None),
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: ReceiptStorage = Depends(get_receipt_storage),
    service: ExpenseService = Depends(get_expense_service),
):
    """Edit a draft. A new receipt replaces the old one."""
    current = await service.get(db, expense_id)
    authorize(caller, Operation.UPDATE, _target(current))

    staged = await _stage_receipt(storage, receipt)
    try:
        data = {
            "amount": amount,
            "currency": currency,
            "date": expense_date,
            "description": description,
            "category": category,
        }
        fields = _parse_form(ExpenseUpdate, {k: v for k, v in data.items() if v not in (None, "")})
        patch = fields.model_dump(exclude_none=True)
        if staged:
            patch["receipt_path"] = storage.reference_for(staged)
        expense = await service.update(db, expense_id, caller.id, patch)
    except BaseException:
        storage.discard(staged)
        raise

    return {"success": True, "data": expense, "message": "Expense updated successfully"}


@router.delete("/{expense_id}", response_model=MessageEnvelope)
async def delete_expense(
    expense_id: UUID,
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: ExpenseService = Depends(get_expense_service),
):
    """Delete a draft or rejected expense."""
    current = await service.get(db, expense_id)
    authorize(caller, Operation.DELETE, _target(current))
    await service.delete(db, expense_id)
    return {"success": True, "message": "Expense deleted successfully"}


# =============================================================================
# Workflow Routes
# =============================================================================

@router.post("/{expense_id}/submit", response_model=ExpenseEnvelope)
async def submit_expense(
    expense_id: UUID,
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: ExpenseService = Depends(get_expense_service),
):
    """Submit a draft for approval."""
    current = await service.get(db, expense_id)
    authorize(caller, Operation.SUBMIT, _target(current))
    expense = await service.submit(db, expense_id)
    return {"success": True, "data": expense, "message": "Expense submitted for approval"}


@router.post("/{expense_id}/review", response_model=ExpenseEnvelope)
async def review_expense(
    expense_id: UUID,
    data: ReviewRequest,
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: ExpenseService = Depends(get_expense_service),
):
    """Approve or reject a submitted expense."""
    current = await service.get(db, expense_id)
    authorize(caller, Operation.REVIEW, _target(current))

    if data.action == "approve":
        expense = await service.approve(db, expense_id, caller.id, data.comments)
        message = "Expense approved successfully"
    else:
        expense = await service.reject(db, expense_id, caller.id, data.comments)
        message = "Expense rejected successfully"

    return {"success": True, "data": expense, "message": message}


@router.post("/{expense_id}/paid", response_model=ExpenseEnvelope)
async def mark_expense_paid(
    expense_id: UUID,
    data: PaymentRequest | None = None,
    caller: UserRef = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: ExpenseService = Depends(get_expense_service),
):
    """Mark an approved expense as paid. Administrators only."""
    current = await service.get(db, expense_id)
    authorize(caller, Operation.MARK_PAID, _target(current))

    details = data.payment_details if data else None
    expense = await service.mark_as_paid(db, expense_id, details)
    return {"success": True, "data": expense, "message": "Expense marked as paid"}
