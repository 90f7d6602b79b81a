from datetime import date

import pytest
from sqlalchemy import func, select

from access import AuthContext
from conftest import add_txn
from errors import ForbiddenError, InvalidInputError
from models import Category, LedgerRole, MonthlySummary, TransactionType
from schemas import TransferIn
from services import TransactionService
from summaries import UNCATEGORIZED, MonthlyAggregationEngine


@pytest.fixture
def february(session, ledger, ctx, checking, savings):
    food = Category(ledger_id=ledger.id, name="Food")
    session.add(food)
    session.flush()
    add_txn(session, checking, TransactionType.income, 100000, date(2026, 2, 1))
    add_txn(session, checking, TransactionType.expense, 30000, date(2026, 2, 10), category_id=food.id)
    add_txn(session, checking, TransactionType.refund, 5000, date(2026, 2, 12), category_id=food.id)
    add_txn(session, checking, TransactionType.expense, 999, date(2026, 3, 1))
    TransactionService(session, ctx).create_transfer(
        TransferIn(
            from_account_id=checking.id,
            to_account_id=savings.id,
            amount_cents=20000,
            date=date(2026, 2, 28),
        )
    )
    return food


def test_month_totals(session, ctx, february) -> None:
    [result] = MonthlyAggregationEngine(session, ctx).aggregate("2026-02")

    summary = result.summary
    assert summary.total_income_cents == 100000
    assert summary.total_expense_cents == 30000
    assert summary.total_refunds_cents == 5000
    # Outgoing and incoming legs both count.
    assert summary.total_transfers_cents == 40000
    assert summary.net_savings_cents == 75000
    assert summary.transaction_count == 5
    assert summary.currency_code == "USD"
    assert result.totals.category_breakdown == {
        UNCATEGORIZED: {"income": 100000, "expense": 0},
        february.id: {"income": 0, "expense": 30000},
    }


def test_aggregate_is_an_idempotent_upsert(session, ctx, february) -> None:
    engine = MonthlyAggregationEngine(session, ctx)
    first = engine.aggregate("2026-02")[0].as_dict()
    second = engine.aggregate("2026-02")[0].as_dict()

    count = session.scalar(
        select(func.count(MonthlySummary.id)).where(MonthlySummary.year_month == "2026-02")
    )
    assert count == 1
    assert first == second


def test_backfill_runs_oldest_first(session, ctx, february) -> None:
    results = MonthlyAggregationEngine(session, ctx).aggregate("2026-03", backfill_months=2)

    assert [r.summary.year_month for r in results] == ["2026-01", "2026-02", "2026-03"]
    assert results[0].summary.transaction_count == 0
    assert results[2].summary.total_expense_cents == 999

    listed = MonthlyAggregationEngine(session, ctx).list_summaries()
    assert [s.year_month for s in listed] == ["2026-03", "2026-02", "2026-01"]


def test_year_boundary(session, ctx, checking) -> None:
    add_txn(session, checking, TransactionType.expense, 100, date(2025, 12, 31))
    add_txn(session, checking, TransactionType.expense, 200, date(2026, 1, 1))

    results = MonthlyAggregationEngine(session, ctx).aggregate("2026-01", backfill_months=1)

    assert [r.summary.total_expense_cents for r in results] == [100, 200]


def test_foreign_amounts_are_converted(session, ctx, checking, converter) -> None:
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 2, 3), currency_code="EUR")
    add_txn(session, checking, TransactionType.expense, 500, date(2026, 2, 4))

    [result] = MonthlyAggregationEngine(session, ctx, converter).aggregate("2026-02")

    assert result.summary.total_expense_cents == 1600


def test_invalid_month_is_rejected(session, ctx) -> None:
    with pytest.raises(InvalidInputError):
        MonthlyAggregationEngine(session, ctx).aggregate("2026-13")


def test_viewer_cannot_aggregate(session, ledger) -> None:
    viewer = AuthContext(user_id="v", ledger_id=ledger.id, role=LedgerRole.viewer)
    with pytest.raises(ForbiddenError):
        MonthlyAggregationEngine(session, viewer).aggregate("2026-02")
