from datetime import date

import pytest

from conftest import TODAY, add_txn
from errors import NotFoundError
from models import BudgetPeriod, Category, TransactionType
from schemas import BudgetIn
from services import BudgetService


@pytest.fixture
def food(session, ledger) -> Category:
    category = Category(ledger_id=ledger.id, name="Food")
    session.add(category)
    session.flush()
    return category


def _budget(session, ctx, period=BudgetPeriod.monthly, **fields):
    data = {"name": "Budget", "amount_cents": 50000, "period": period, "start_date": date(2025, 1, 1)}
    data.update(fields)
    return BudgetService(session, ctx).create(BudgetIn(**data))


def test_category_budget_only_sums_its_expenses(session, ctx, checking, food) -> None:
    add_txn(session, checking, TransactionType.expense, 1200, date(2026, 3, 2), category_id=food.id)
    add_txn(session, checking, TransactionType.expense, 800, date(2026, 3, 3))
    add_txn(session, checking, TransactionType.income, 5000, date(2026, 3, 3), category_id=food.id)
    add_txn(session, checking, TransactionType.refund, 300, date(2026, 3, 4), category_id=food.id)

    service = BudgetService(session, ctx)
    scoped = _budget(session, ctx, category_id=food.id)
    overall = _budget(session, ctx)

    assert service.spent(scoped, today=TODAY) == 1200
    assert service.spent(overall, today=TODAY) == 2000


def test_monthly_window_starts_at_current_month(session, ctx, checking) -> None:
    add_txn(session, checking, TransactionType.expense, 700, date(2026, 2, 28))
    add_txn(session, checking, TransactionType.expense, 300, date(2026, 3, 1))
    budget = _budget(session, ctx, start_date=date(2024, 6, 1))

    service = BudgetService(session, ctx)
    assert service.spent(budget, today=TODAY) == 300
    progress = service.progress(budget, today=TODAY)
    assert progress["window_start"] == date(2026, 3, 1)
    assert progress["window_end"] is None
    assert progress["remaining_cents"] == 49700
    assert progress["percent_used"] == 0.6


def test_non_monthly_periods_use_stored_window(session, ctx, checking) -> None:
    add_txn(session, checking, TransactionType.expense, 100, date(2025, 12, 31))
    add_txn(session, checking, TransactionType.expense, 200, date(2026, 1, 15))
    add_txn(session, checking, TransactionType.expense, 400, date(2026, 4, 1))
    budget = _budget(
        session,
        ctx,
        period=BudgetPeriod.quarterly,
        start_date=date(2026, 1, 1),
        end_date=date(2026, 3, 31),
    )

    assert BudgetService(session, ctx).spent(budget, today=TODAY) == 200


def test_spend_is_reported_in_ledger_currency(session, ctx, checking, converter) -> None:
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 3, 5), currency_code="EUR")
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 3, 6), currency_code="GBP")
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 3, 7))
    budget = _budget(session, ctx)

    spent = BudgetService(session, ctx, converter).spent(budget, today=TODAY)

    assert spent == 1100 + 1250 + 1000


def test_unknown_budget(session, ctx) -> None:
    with pytest.raises(NotFoundError):
        BudgetService(session, ctx).get("missing")
