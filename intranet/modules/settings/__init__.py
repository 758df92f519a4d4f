"""System settings module."""
from .models import SystemSetting
from .services import get_setting, get_expense_categories, parse_category_list

__all__ = [
    "SystemSetting",
    "get_setting",
    "get_expense_categories",
    "parse_category_list",
]
