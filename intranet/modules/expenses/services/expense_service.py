"""Service for managing expense records and their approval workflow.

An expense moves through a fixed set of states:

    draft --submit--> submitted --approve--> approved --mark_as_paid--> paid
                          |
                          +--reject--> rejected

1. The owner creates a draft and may edit or delete it freely
2. Submitting freezes the draft and opens a level-1 approval for the
   owner's manager (when the owner has one)
3. A reviewer approves or rejects the submission
4. An administrator marks approved expenses as paid
5. Draft and rejected expenses may be deleted; nothing else can be

Every mutation runs in a single transaction. Status changes go through
`transition`, a conditional UPDATE that only matches rows still in the
expected status, so two racing requests cannot both win.
"""
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from math import ceil
from typing import Any
from uuid import UUID

from sqlalchemy import select, update, delete, func, case
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from intranet.core.config import settings
from intranet.core.database import transaction
from intranet.core.exceptions import ValidationError, InvalidStateError, NotFoundError
from intranet.core.logging import get_logger
from intranet.modules.directory import User, get_manager_id
from intranet.modules.settings import get_expense_categories
from intranet.modules.expenses.models import (
    Expense,
    ExpenseApproval,
    ExpenseStatus,
    ApprovalStatus,
    DELETABLE_STATUSES,
    transition_for,
)
from intranet.modules.expenses.storage import ReceiptStorage, receipt_storage

logger = get_logger(__name__)

# Columns an update may touch. Anything else in a patch is rejected.
UPDATABLE_FIELDS = ("amount", "currency", "date", "description", "category", "receipt_path")

APPROVAL_LEVEL = 1


class ExpenseSort(str, Enum):
    """Supported list orderings."""
    DATE_DESC = "dateDesc"
    DATE_ASC = "dateAsc"
    AMOUNT_DESC = "amountDesc"
    AMOUNT_ASC = "amountAsc"
    STATUS_ASC = "statusAsc"
    STATUS_DESC = "statusDesc"


@dataclass
class ExpenseFilters:
    """List filters. `user_id` wins over `user_ids` when both are set."""
    user_id: UUID | None = None
    user_ids: tuple[UUID, ...] | None = None
    status: ExpenseStatus | None = None
    category: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None


def status_rank():
    """SQL expression ranking status in workflow order."""
    return case({s.value: s.rank for s in ExpenseStatus}, value=Expense.status)


# -----------------------------------------------------------------------------
# Field validation
# -----------------------------------------------------------------------------

def validate_amount(value: Any) -> Decimal:
    """Positive decimal, kept exactly as given."""
    if isinstance(value, bool) or value is None:
        raise ValidationError("Amount must be a positive number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a positive number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be a positive number")
    return amount


def validate_date(value: Any) -> date:
    """Accept a date, a datetime, or an ISO-8601 string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            pass
    raise ValidationError("Invalid date format")


def validate_currency(value: Any) -> str:
    """Three-letter currency code, upper-cased."""
    if not isinstance(value, str) or len(value.strip()) != 3 or not value.strip().isalpha():
        raise ValidationError("Currency must be a 3-letter code")
    return value.strip().upper()


def validate_category(value: Any, valid_categories: list[str]) -> str:
    """Category must be one of the configured names."""
    if not isinstance(value, str) or value not in valid_categories:
        raise ValidationError(
            f"Invalid category. Must be one of: {', '.join(valid_categories)}"
        )
    return value


def validate_description(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Description is required")
    return value


class ExpenseService:
    """Expense CRUD and lifecycle transitions."""

    def __init__(self, storage: ReceiptStorage | None = None):
        self.storage = storage or receipt_storage

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @staticmethod
    def _detail_query():
        """Expense columns joined with owner, owner's manager and approver names."""
        owner = aliased(User, name="owner")
        manager = aliased(User, name="manager")
        approver = aliased(User, name="approver")
        return (
            select(
                *Expense.__table__.columns,
                (owner.first_name + " " + owner.last_name).label("user_name"),
                owner.email.label("user_email"),
                owner.manager_id.label("user_manager_id"),
                (manager.first_name + " " + manager.last_name).label("manager_name"),
                (approver.first_name + " " + approver.last_name).label("approver_name"),
            )
            .select_from(Expense)
            .join(owner, owner.id == Expense.user_id)
            .outerjoin(manager, manager.id == owner.manager_id)
            .outerjoin(approver, approver.id == Expense.approved_by)
        )

    async def find_by_id(self, db: AsyncSession, expense_id: UUID) -> dict[str, Any] | None:
        """Return one expense with related names, or None."""
        result = await db.execute(self._detail_query().where(Expense.id == expense_id))
        row = result.mappings().first()
        return dict(row) if row else None

    async def get(self, db: AsyncSession, expense_id: UUID) -> dict[str, Any]:
        """Like find_by_id, but raises NotFoundError."""
        expense = await self.find_by_id(db, expense_id)
        if expense is None:
            raise NotFoundError("Expense not found")
        return expense

    async def get_approvals(self, db: AsyncSession, expense_id: UUID) -> list[dict[str, Any]]:
        """Approval history for an expense, lowest level first."""
        query = (
            select(
                *ExpenseApproval.__table__.columns,
                (User.first_name + " " + User.last_name).label("approver_name"),
                User.email.label("approver_email"),
            )
            .join(User, User.id == ExpenseApproval.approver_id)
            .where(ExpenseApproval.expense_id == expense_id)
            .order_by(ExpenseApproval.level.asc(), ExpenseApproval.created_at.asc())
        )
        result = await db.execute(query)
        return [dict(row) for row in result.mappings().all()]

    async def list_expenses(
        self,
        db: AsyncSession,
        filters: ExpenseFilters | None = None,
        page: int = 1,
        limit: int | None = None,
        sort: ExpenseSort = ExpenseSort.DATE_DESC,
    ) -> dict[str, Any]:
        """Filtered, sorted, paginated listing."""
        filters = filters or ExpenseFilters()
        page = max(int(page), 1)
        limit = min(max(int(limit or settings.DEFAULT_PAGE_SIZE), 1), settings.MAX_PAGE_SIZE)

        conditions = self._list_conditions(filters)

        total = await db.scalar(select(func.count(Expense.id)).where(*conditions)) or 0

        offset = (page - 1) * limit
        query = (
            self._detail_query()
            .where(*conditions)
            .order_by(*self._ordering(ExpenseSort(sort)))
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(query)
        rows = [dict(row) for row in result.mappings().all()]

        return {
            "data": rows,
            "pagination": {
                "total": total,
                "per_page": limit,
                "current_page": page,
                "last_page": ceil(total / limit) if total else 0,
                "from": offset + 1 if rows else 0,
                "to": min(offset + limit, total) if rows else 0,
            },
        }

    @staticmethod
    def _list_conditions(filters: ExpenseFilters) -> list:
        conditions = []
        if filters.user_id is not None:
            conditions.append(Expense.user_id == filters.user_id)
        elif filters.user_ids is not None:
            conditions.append(Expense.user_id.in_(list(filters.user_ids)))
        if filters.status is not None:
            conditions.append(Expense.status == ExpenseStatus(filters.status).value)
        if filters.category:
            conditions.append(Expense.category == filters.category)
        if filters.start_date is not None:
            conditions.append(Expense.date >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(Expense.date <= filters.end_date)
        if filters.min_amount is not None:
            conditions.append(Expense.amount >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(Expense.amount <= filters.max_amount)
        return conditions

    @staticmethod
    def _ordering(sort: ExpenseSort) -> list:
        rank = status_rank()
        orderings = {
            ExpenseSort.DATE_ASC: [Expense.date.asc(), Expense.created_at.asc()],
            ExpenseSort.DATE_DESC: [Expense.date.desc(), Expense.created_at.desc()],
            ExpenseSort.AMOUNT_DESC: [Expense.amount.desc(), Expense.date.desc()],
            ExpenseSort.AMOUNT_ASC: [Expense.amount.asc(), Expense.date.desc()],
            ExpenseSort.STATUS_ASC: [rank.asc(), Expense.date.desc()],
            ExpenseSort.STATUS_DESC: [rank.desc(), Expense.date.desc()],
        }
        # id keeps pages stable when everything else ties
        return orderings[sort] + [Expense.id.asc()]

    async def valid_categories(self, db: AsyncSession) -> list[str]:
        return await get_expense_categories(db)

    # -------------------------------------------------------------------------
    # Create / update / delete
    # -------------------------------------------------------------------------

    async def create(
        self,
        db: AsyncSession,
        owner_id: UUID,
        amount: Any,
        currency: str | None,
        expense_date: Any,
        description: str,
        category: str,
        receipt_path: str | None = None,
    ) -> dict[str, Any]:
        """Create a draft expense owned by `owner_id`."""
        values = {
            "amount": validate_amount(amount),
            "currency": validate_currency(currency or settings.DEFAULT_CURRENCY),
            "date": validate_date(expense_date),
            "description": validate_description(description),
            "category": validate_category(category, await self.valid_categories(db)),
            "receipt_path": self._validate_receipt(receipt_path),
        }

        async with transaction(db):
            expense = Expense(
                user_id=owner_id,
                status=ExpenseStatus.DRAFT.value,
                **values,
            )
            db.add(expense)
            await db.flush()
            expense_id = expense.id

        logger.info(
            "Expense created",
            expense_id=str(expense_id),
            user_id=str(owner_id),
            status=ExpenseStatus.DRAFT.value,
        )
        return await self.get(db, expense_id)

    async def update(
        self,
        db: AsyncSession,
        expense_id: UUID,
        owner_id: UUID,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Edit a draft. Only the owner may edit, and only while in draft.

        A replaced receipt file is deleted once the change has committed.
        """
        unknown = sorted(set(patch) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")

        current = await self.get(db, expense_id)
        if current["user_id"] != owner_id or current["status"] != ExpenseStatus.DRAFT.value:
            raise InvalidStateError("Only draft expenses can be updated by their owner")

        values = await self._validated_patch(db, patch)
        if not values:
            return current

        async with transaction(db):
            result = await db.execute(
                update(Expense)
                .where(Expense.id == expense_id)
                .where(Expense.user_id == owner_id)
                .where(Expense.status == ExpenseStatus.DRAFT.value)
                .values(**values, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError("Only draft expenses can be updated by their owner")

        old_receipt = current.get("receipt_path")
        if "receipt_path" in values and old_receipt and old_receipt != values["receipt_path"]:
            self.storage.delete(old_receipt)

        logger.info(
            "Expense updated",
            expense_id=str(expense_id),
            user_id=str(owner_id),
            fields=",".join(sorted(values)),
        )
        return await self.get(db, expense_id)

    async def _validated_patch(self, db: AsyncSession, patch: dict[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if patch.get("amount") is not None:
            values["amount"] = validate_amount(patch["amount"])
        if patch.get("currency") is not None:
            values["currency"] = validate_currency(patch["currency"])
        if patch.get("date") is not None:
            values["date"] = validate_date(patch["date"])
        if patch.get("description") is not None:
            values["description"] = validate_description(patch["description"])
        if patch.get("category") is not None:
            values["category"] = validate_category(
                patch["category"], await self.valid_categories(db)
            )
        if patch.get("receipt_path") is not None:
            values["receipt_path"] = self._validate_receipt(patch["receipt_path"])
        return values

    def _validate_receipt(self, reference: str | None) -> str | None:
        if reference is None:
            return None
        self.storage.resolve(reference)
        return reference

    async def delete(self, db: AsyncSession, expense_id: UUID) -> bool:
        """
        Delete a draft or rejected expense with its approvals and receipt.
        """
        current = await self.get(db, expense_id)
        if current["status"] not in {s.value for s in DELETABLE_STATUSES}:
            raise InvalidStateError("Only draft or rejected expenses can be deleted")

        async with transaction(db):
            await db.execute(
                delete(ExpenseApproval)
                .where(ExpenseApproval.expense_id == expense_id)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                delete(Expense)
                .where(Expense.id == expense_id)
                .where(Expense.status.in_([s.value for s in DELETABLE_STATUSES]))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError("Only draft or rejected expenses can be deleted")

        self.storage.delete(current.get("receipt_path"))

        logger.info(
            "Expense deleted",
            expense_id=str(expense_id),
            user_id=str(current["user_id"]),
            status=current["status"],
        )
        return True

    # -------------------------------------------------------------------------
    # Lifecycle transitions
    # -------------------------------------------------------------------------

    async def transition(
        self,
        db: AsyncSession,
        expense_id: UUID,
        expected: ExpenseStatus,
        new: ExpenseStatus,
        **stamps: Any,
    ) -> int:
        """
        Compare-and-swap the status of one expense.

        Only matches the row while it is still in `expected`. Returns the
        number of rows changed; 0 means the record is missing or stale.
        """
        result = await db.execute(
            update(Expense)
            .where(Expense.id == expense_id)
            .where(Expense.status == expected.value)
            .values(status=new.value, updated_at=func.now(), **stamps)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def submit(self, db: AsyncSession, expense_id: UUID) -> dict[str, Any]:
        """Submit a draft and open an approval for the owner's manager."""
        await self.get(db, expense_id)
        expected, target = transition_for("submit")

        async with transaction(db):
            changed = await self.transition(
                db, expense_id, expected, target, submitted_at=func.now()
            )
            if changed == 0:
                raise InvalidStateError("Only draft expenses can be submitted")

            owner_id = await db.scalar(select(Expense.user_id).where(Expense.id == expense_id))
            manager_id = await get_manager_id(db, owner_id)
            if manager_id is not None:
                db.add(ExpenseApproval(
                    expense_id=expense_id,
                    approver_id=manager_id,
                    level=APPROVAL_LEVEL,
                    status=ApprovalStatus.PENDING.value,
                ))
                await db.flush()

        logger.info(
            "Expense submitted",
            expense_id=str(expense_id),
            user_id=str(owner_id),
            status=target.value,
            approver_id=str(manager_id) if manager_id else None,
        )
        return await self.get(db, expense_id)

    async def approve(
        self, db: AsyncSession, expense_id: UUID, approver_id: UUID, comments: str | None = None
    ) -> dict[str, Any]:
        """Approve a submitted expense."""
        return await self._review(db, expense_id, approver_id, ApprovalStatus.APPROVED, comments)

    async def reject(
        self, db: AsyncSession, expense_id: UUID, approver_id: UUID, comments: str | None = None
    ) -> dict[str, Any]:
        """Reject a submitted expense."""
        return await self._review(db, expense_id, approver_id, ApprovalStatus.REJECTED, comments)

    async def _review(
        self,
        db: AsyncSession,
        expense_id: UUID,
        approver_id: UUID,
        decision: ApprovalStatus,
        comments: str | None,
    ) -> dict[str, Any]:
        await self.get(db, expense_id)

        if decision == ApprovalStatus.APPROVED:
            expected, target = transition_for("approve")
            stamps = {"approved_by": approver_id, "approved_at": func.now()}
        else:
            expected, target = transition_for("reject")
            stamps = {}

        async with transaction(db):
            changed = await self.transition(db, expense_id, expected, target, **stamps)
            if changed == 0:
                raise InvalidStateError("Only submitted expenses can be reviewed")
            await self._record_decision(db, expense_id, approver_id, decision, comments)

        logger.info(
            f"Expense {target.value}",
            expense_id=str(expense_id),
            user_id=str(approver_id),
            status=target.value,
        )
        return await self.get(db, expense_id)

    @staticmethod
    async def _record_decision(
        db: AsyncSession,
        expense_id: UUID,
        approver_id: UUID,
        decision: ApprovalStatus,
        comments: str | None,
    ) -> None:
        """Close the pending approval, or record one when none was opened."""
        result = await db.execute(
            update(ExpenseApproval)
            .where(ExpenseApproval.expense_id == expense_id)
            .where(ExpenseApproval.level == APPROVAL_LEVEL)
            .where(ExpenseApproval.status == ApprovalStatus.PENDING.value)
            .values(
                approver_id=approver_id,
                status=decision.value,
                comments=comments or None,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.add(ExpenseApproval(
                expense_id=expense_id,
                approver_id=approver_id,
                level=APPROVAL_LEVEL,
                status=decision.value,
                comments=comments or None,
            ))
            await db.flush()

    async def mark_as_paid(
        self, db: AsyncSession, expense_id: UUID, payment_details: str | None = None
    ) -> dict[str, Any]:
        """Mark an approved expense as paid."""
        await self.get(db, expense_id)
        expected, target = transition_for("mark_paid")

        async with transaction(db):
            changed = await self.transition(
                db,
                expense_id,
                expected,
                target,
                paid_at=func.now(),
                payment_details=payment_details or None,
            )
            if changed == 0:
                raise InvalidStateError("Only approved expenses can be marked as paid")

        logger.info(
            "Expense paid",
            expense_id=str(expense_id),
            status=target.value,
        )
        return await self.get(db, expense_id)
