"""Expense statistics over a trailing window.

The window is `[today - N days, ...)` where N comes from PERIOD_DAYS. All four
aggregates share the same filter, so the per-status rows always sum to the
totals row.
"""
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select, func, extract
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.core.logging import get_logger
from intranet.modules.expenses.models import Expense
from intranet.modules.expenses.schemas import StatisticsPeriod
from intranet.modules.expenses.services.expense_service import status_rank

logger = get_logger(__name__)

PERIOD_DAYS = {
    StatisticsPeriod.WEEK: 7,
    StatisticsPeriod.MONTH: 30,
    StatisticsPeriod.QUARTER: 90,
    StatisticsPeriod.YEAR: 365,
}

CENTS = Decimal("0.01")


def window_start(period: StatisticsPeriod, today: date | None = None) -> date:
    """First date included in the window."""
    today = today or date.today()
    return today - timedelta(days=PERIOD_DAYS[StatisticsPeriod(period)])


def _money(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value)).quantize(CENTS)


async def get_statistics(
    db: AsyncSession,
    period: StatisticsPeriod = StatisticsPeriod.MONTH,
    user_id: UUID | None = None,
    user_ids: Iterable[UUID] | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    """
    Aggregate expenses dated inside the window.

    Args:
        db: Database session
        period: Window length
        user_id: Restrict to one owner
        user_ids: Restrict to a set of owners (ignored when user_id is set)
        today: Reference date, defaults to the current date

    Returns:
        Dict with period, startDate, byStatus, byCategory, trends and totals
    """
    period = StatisticsPeriod(period)
    start = window_start(period, today)

    conditions = [Expense.date >= start]
    if user_id is not None:
        conditions.append(Expense.user_id == user_id)
    elif user_ids is not None:
        conditions.append(Expense.user_id.in_(list(user_ids)))

    total_amount = func.coalesce(func.sum(Expense.amount), 0)

    # By status, in workflow order
    status_rows = await db.execute(
        select(
            Expense.status,
            func.count(Expense.id).label("count"),
            total_amount.label("total_amount"),
        )
        .where(*conditions)
        .group_by(Expense.status)
        .order_by(status_rank())
    )
    by_status = [
        {"status": row["status"], "count": row["count"], "total_amount": _money(row["total_amount"])}
        for row in status_rows.mappings()
    ]

    # By category, largest spend first
    category_rows = await db.execute(
        select(
            Expense.category,
            func.count(Expense.id).label("count"),
            total_amount.label("total_amount"),
        )
        .where(*conditions)
        .group_by(Expense.category)
        .order_by(total_amount.desc(), Expense.category.asc())
    )
    by_category = [
        {"category": row["category"], "count": row["count"], "total_amount": _money(row["total_amount"])}
        for row in category_rows.mappings()
    ]

    # Monthly trend, oldest month first
    year = extract("year", Expense.date)
    month = extract("month", Expense.date)
    trend_rows = await db.execute(
        select(
            year.label("year"),
            month.label("month"),
            func.count(Expense.id).label("count"),
            total_amount.label("total_amount"),
        )
        .where(*conditions)
        .group_by(year, month)
        .order_by(year, month)
    )
    trends = [
        {
            "month": f"{int(row['year']):04d}-{int(row['month']):02d}",
            "count": row["count"],
            "total_amount": _money(row["total_amount"]),
        }
        for row in trend_rows.mappings()
    ]

    totals_row = (await db.execute(
        select(
            func.count(Expense.id).label("total_count"),
            total_amount.label("total_amount"),
            func.avg(Expense.amount).label("average_amount"),
            func.min(Expense.amount).label("min_amount"),
            func.max(Expense.amount).label("max_amount"),
        ).where(*conditions)
    )).one()
    totals = {
        "total_count": totals_row.total_count,
        "total_amount": _money(totals_row.total_amount),
        "average_amount": _money(totals_row.average_amount),
        "min_amount": _money(totals_row.min_amount),
        "max_amount": _money(totals_row.max_amount),
    }

    logger.debug(
        "Statistics computed",
        period=period.value,
        start_date=start.isoformat(),
        total_count=totals["total_count"],
    )

    return {
        "period": period,
        "startDate": start,
        "byStatus": by_status,
        "byCategory": by_category,
        "trends": trends,
        "totals": totals,
    }
