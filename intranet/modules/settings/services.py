"""Runtime settings lookups."""
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.core.config import settings
from .models import SystemSetting


async def get_setting(db: AsyncSession, key: str) -> Any | None:
    """Return the stored value for `key`, or None when unset."""
    return await db.scalar(select(SystemSetting.value).where(SystemSetting.key == key))


def parse_category_list(value: Any) -> list[str]:
    """Accept a comma-separated string or a JSON list of names."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        return []
    return [item.strip() for item in items if item and item.strip()]


async def get_expense_categories(db: AsyncSession) -> list[str]:
    """
    Valid expense categories.

    Read on every call so administrators can change the list at runtime
    without a restart. Falls back to DEFAULT_EXPENSE_CATEGORIES.
    """
    stored = parse_category_list(await get_setting(db, settings.EXPENSE_CATEGORIES_KEY))
    return stored or list(settings.DEFAULT_EXPENSE_CATEGORIES)
