from dataclasses import dataclass
from datetime import date
from typing import Optional

from models import Budget, BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: Optional[date]  # None means open-ended


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period("month", first, next_month - date.resolution)


def budget_window(
    budget: Budget,
    *,
    today: date,
    month: Optional[int] = None,
    year: Optional[int] = None,
) -> Period:
    """Date range a budget's spend is aggregated over.

    Custom budgets use their own start/end dates (open-ended when no end).
    Monthly, weekly and biweekly budgets all use the calendar month selected
    by ``month``/``year`` (defaulting to the month of ``today``); the period
    label does not narrow the window.
    """
    if budget.period == BudgetPeriod.custom:
        return Period("custom", budget.start_date, budget.end_date)
    return month_period(year or today.year, month or today.month)
