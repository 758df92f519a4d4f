"""Expense claims, approval workflow and statistics."""
from .models import Expense, ExpenseApproval, ExpenseStatus, ApprovalStatus
from .routes import router

__all__ = [
    "Expense",
    "ExpenseApproval",
    "ExpenseStatus",
    "ApprovalStatus",
    "router",
]
