from datetime import date
from decimal import Decimal

import pytest

from schemas import BudgetIn, CategoryIn
from services import (
    BudgetAnalytics,
    BudgetService,
    CategoryService,
    TransactionService,
    ValidationError,
)


def setup_budget(session, ctx, clock, amount="1000", period="monthly", **extra):
    food = CategoryService(session, ctx, clock).create(CategoryIn(name="Comida"))
    budget = BudgetService(session, ctx, clock).create(
        BudgetIn(
            category_id=food.id,
            amount=Decimal(amount),
            period=period,
            start_date=extra.pop("start_date", date(2026, 1, 1)),
            **extra,
        )
    )
    return food, budget


def spend(session, ctx, clock, category_id, amount, on=date(2026, 3, 10), **extra):
    return TransactionService(session, ctx, clock).create(
        {
            "description": "gasto",
            "amount": amount,
            "date": on,
            "category_id": category_id,
            **extra,
        }
    )


@pytest.mark.parametrize(
    "spent, status, percentage",
    [
        ("799", "good", "79.90"),
        ("800", "warning", "80.00"),
        ("1000", "good", "100.00"),
        ("1000.01", "over", "100.00"),
    ],
)
def test_status_thresholds(session, ctx, clock, spent, status, percentage) -> None:
    food, budget = setup_budget(session, ctx, clock)
    spend(session, ctx, clock, food.id, spent)

    [result] = BudgetAnalytics(session, ctx, clock).analyze()
    assert result.budget_id == budget.id
    assert result.spent == Decimal(spent)
    assert result.status == status
    assert result.percentage == Decimal(percentage)
    assert result.remaining == Decimal("1000") - Decimal(spent)


def test_only_active_spend_in_the_window_counts(session, ctx, clock) -> None:
    food, _ = setup_budget(session, ctx, clock)
    other = CategoryService(session, ctx, clock).create(CategoryIn(name="Hogar"))

    spend(session, ctx, clock, food.id, "100")
    spend(session, ctx, clock, food.id, "50", on=date(2026, 3, 31))
    spend(session, ctx, clock, food.id, "400", on=date(2026, 2, 28))
    spend(session, ctx, clock, food.id, "70", status="pending")
    spend(session, ctx, clock, other.id, "900")
    gone = spend(session, ctx, clock, food.id, "300")
    TransactionService(session, ctx, clock).delete(gone.id)

    [result] = BudgetAnalytics(session, ctx, clock).analyze()
    assert result.spent == Decimal("150.00")
    assert result.window.start == date(2026, 3, 1)
    assert result.window.end == date(2026, 3, 31)


def test_weekly_and_biweekly_use_the_calendar_month(session, ctx, clock) -> None:
    food, _ = setup_budget(session, ctx, clock, period="weekly")
    spend(session, ctx, clock, food.id, "100", on=date(2026, 3, 2))
    spend(session, ctx, clock, food.id, "100", on=date(2026, 3, 30))

    [result] = BudgetAnalytics(session, ctx, clock).analyze()
    assert result.period == "weekly"
    assert result.spent == Decimal("200.00")


def test_custom_budget_uses_its_own_dates(session, ctx, clock) -> None:
    food, _ = setup_budget(
        session,
        ctx,
        clock,
        period="custom",
        start_date=date(2026, 2, 15),
        end_date=date(2026, 3, 5),
    )
    spend(session, ctx, clock, food.id, "100", on=date(2026, 2, 14))
    spend(session, ctx, clock, food.id, "200", on=date(2026, 2, 15))
    spend(session, ctx, clock, food.id, "300", on=date(2026, 3, 5))
    spend(session, ctx, clock, food.id, "400", on=date(2026, 3, 6))

    [result] = BudgetAnalytics(session, ctx, clock).analyze(month=7, year=2020)
    assert result.spent == Decimal("500.00")


def test_open_ended_custom_budget(session, ctx, clock) -> None:
    food, _ = setup_budget(
        session, ctx, clock, period="custom", start_date=date(2026, 3, 1)
    )
    spend(session, ctx, clock, food.id, "10", on=date(2026, 3, 1))
    spend(session, ctx, clock, food.id, "10", on=date(2026, 3, 14))

    [result] = BudgetAnalytics(session, ctx, clock).analyze()
    assert result.window.end is None
    assert result.spent == Decimal("20.00")


def test_month_override_and_bounds(session, ctx, clock) -> None:
    food, _ = setup_budget(session, ctx, clock)
    spend(session, ctx, clock, food.id, "250", on=date(2026, 2, 3))

    analytics = BudgetAnalytics(session, ctx, clock)
    [february] = analytics.analyze(month=2, year=2026)
    assert february.spent == Decimal("250.00")
    [march] = analytics.analyze()
    assert march.spent == Decimal("0.00")

    with pytest.raises(ValidationError):
        analytics.analyze(month=13)
    with pytest.raises(ValidationError):
        analytics.analyze(month=0)


def test_zero_budget_reports_zero_percent(session, ctx, clock) -> None:
    food, _ = setup_budget(session, ctx, clock, amount="0")
    spend(session, ctx, clock, food.id, "5")

    [result] = BudgetAnalytics(session, ctx, clock).analyze()
    assert result.percentage == Decimal("0.00")
    assert result.status == "over"


def test_summary_and_team_scope(session, ctx, other_ctx, clock) -> None:
    food, _ = setup_budget(session, ctx, clock, amount="500")
    spend(session, ctx, clock, food.id, "125")

    statuses = BudgetAnalytics(session, ctx, clock).analyze()
    summary = BudgetAnalytics.summary(statuses)
    assert summary == {
        "budgeted": Decimal("500.00"),
        "spent": Decimal("125.00"),
        "remaining": Decimal("375.00"),
    }
    assert BudgetAnalytics(session, other_ctx, clock).analyze() == []


def test_inactive_budgets_are_skipped(session, ctx, clock) -> None:
    food, budget = setup_budget(session, ctx, clock)
    service = BudgetService(session, ctx, clock)
    service.update(
        budget.id,
        BudgetIn(
            category_id=food.id,
            amount=Decimal("1000"),
            period="monthly",
            start_date=date(2026, 1, 1),
            is_active=False,
        ),
    )
    assert BudgetAnalytics(session, ctx, clock).analyze() == []
    assert service.list_all() == []
    assert [b.id for b in service.list_all(include_inactive=True)] == [budget.id]
