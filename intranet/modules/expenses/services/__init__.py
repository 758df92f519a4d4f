"""Expense services."""
from .expense_service import (
    ExpenseService,
    ExpenseFilters,
    ExpenseSort,
    UPDATABLE_FIELDS,
)

__all__ = [
    "ExpenseService",
    "ExpenseFilters",
    "ExpenseSort",
    "UPDATABLE_FIELDS",
]
