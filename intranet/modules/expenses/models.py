"""Database models for the expenses module."""
import uuid
from enum import Enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Date,
    DateTime,
    Integer,
    Numeric,
    ForeignKey,
    Index,
    CheckConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from intranet.core.database import Base


class ExpenseStatus(str, Enum):
    """Workflow states, in workflow order."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"

    @property
    def rank(self) -> int:
        return STATUS_ORDER.index(self) + 1


STATUS_ORDER = list(ExpenseStatus)

# Legal transitions: current status -> {action: target status}
TRANSITIONS: dict[ExpenseStatus, dict[str, ExpenseStatus]] = {
    ExpenseStatus.DRAFT: {"submit": ExpenseStatus.SUBMITTED},
    ExpenseStatus.SUBMITTED: {
        "approve": ExpenseStatus.APPROVED,
        "reject": ExpenseStatus.REJECTED,
    },
    ExpenseStatus.APPROVED: {"mark_paid": ExpenseStatus.PAID},
    ExpenseStatus.REJECTED: {},
    ExpenseStatus.PAID: {},
}


def transition_for(action: str) -> tuple[ExpenseStatus, ExpenseStatus]:
    """Return the (expected, target) statuses of a workflow action."""
    for source, actions in TRANSITIONS.items():
        if action in actions:
            return source, actions[action]
    raise KeyError(action)


DELETABLE_STATUSES = frozenset({ExpenseStatus.DRAFT, ExpenseStatus.REJECTED})


class ApprovalStatus(str, Enum):
    """Reviewer decision on a single approval record."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Expense(Base):
    """Reimbursement claim."""

    __tablename__ = "expenses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, server_default="USD")
    date = Column(Date, nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(100), nullable=False)
    receipt_path = Column(String(500), nullable=True)

    # Workflow status: draft, submitted, approved, rejected, paid
    status = Column(String(20), nullable=False, server_default=ExpenseStatus.DRAFT.value)

    # People and timestamps
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_details = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'rejected', 'paid')",
            name="ck_expenses_status",
        ),
        Index("idx_expenses_user", "user_id"),
        Index("idx_expenses_status", "status"),
        Index("idx_expenses_date", "date"),
        Index("idx_expenses_category", "category"),
    )


class ExpenseApproval(Base):
    """One reviewer decision for one review level of an expense."""

    __tablename__ = "expense_approvals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    expense_id = Column(Uuid, ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False)
    approver_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    level = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, server_default=ApprovalStatus.PENDING.value)
    comments = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_expense_approvals_expense", "expense_id"),
        Index("idx_expense_approvals_approver", "approver_id"),
        Index("idx_expense_approvals_status", "status"),
    )
