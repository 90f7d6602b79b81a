from datetime import date

import pytest
from sqlalchemy import func, select

from conftest import add_txn
from errors import InvalidInputError
from insights import InsightEngine
from models import (
    Category,
    Insight,
    Merchant,
    Subscription,
    SubscriptionInterval,
    TransactionType,
)


MARCH = "2026-03"


def _named(session, model, ledger, name):
    row = model(ledger_id=ledger.id, name=name)
    session.add(row)
    session.flush()
    return row


def _types(findings) -> list[str]:
    return sorted(f.insight_type for f in findings)


def test_spike_and_drop(session, ledger, ctx, checking) -> None:
    food = _named(session, Category, ledger, "Food")
    travel = _named(session, Category, ledger, "Travel")
    misc = _named(session, Category, ledger, "Misc")
    add_txn(session, checking, TransactionType.income, 900000, date(2026, 3, 1))
    add_txn(session, checking, TransactionType.expense, 10000, date(2026, 2, 5), category_id=food.id)
    add_txn(session, checking, TransactionType.expense, 15000, date(2026, 3, 5), category_id=food.id)
    add_txn(session, checking, TransactionType.expense, 20000, date(2026, 2, 6), category_id=travel.id)
    add_txn(session, checking, TransactionType.expense, 5000, date(2026, 3, 6), category_id=travel.id)
    # Too small a base to report a drop.
    add_txn(session, checking, TransactionType.expense, 4000, date(2026, 2, 7), category_id=misc.id)

    findings = InsightEngine(session, ctx).evaluate(MARCH)

    by_type = {f.insight_type: f for f in findings}
    assert _types(findings) == ["category_drop", "category_spike"]
    assert by_type["category_spike"].title == "Food spending up 50%"
    assert by_type["category_spike"].data["previous_cents"] == 10000
    assert by_type["category_drop"].title == "Travel spending down 75%"


def test_spike_threshold_is_inclusive(session, ledger, ctx, checking) -> None:
    food = _named(session, Category, ledger, "Food")
    add_txn(session, checking, TransactionType.income, 100, date(2026, 3, 1))
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 2, 5), category_id=food.id)
    add_txn(session, checking, TransactionType.expense, 1300, date(2026, 3, 5), category_id=food.id)

    assert _types(InsightEngine(session, ctx).evaluate(MARCH)) == ["category_spike"]


def test_subscription_creep(session, ledger, ctx, checking) -> None:
    add_txn(session, checking, TransactionType.income, 100000, date(2026, 3, 1))
    for name, amount in (("Video", 12000), ("Music", 8000)):
        session.add(
            Subscription(
                ledger_id=ledger.id,
                account_id=checking.id,
                name=name,
                amount_cents=amount,
                currency_code="USD",
                interval=SubscriptionInterval.monthly,
                next_due_date=date(2026, 4, 1),
            )
        )
    session.flush()

    [finding] = InsightEngine(session, ctx).evaluate(MARCH)

    assert finding.insight_type == "subscription_creep"
    assert finding.title == "Subscriptions are 20% of income"
    assert finding.data["count"] == 2


def test_top_merchant_change(session, ledger, ctx, checking) -> None:
    grocer = _named(session, Merchant, ledger, "Grocer")
    airline = _named(session, Merchant, ledger, "Airline")
    add_txn(session, checking, TransactionType.income, 100, date(2026, 3, 1))
    add_txn(session, checking, TransactionType.expense, 3000, date(2026, 2, 2), merchant_id=grocer.id)
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 2, 3), merchant_id=airline.id)
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 3, 2), merchant_id=grocer.id)
    add_txn(session, checking, TransactionType.expense, 9000, date(2026, 3, 3), merchant_id=airline.id)

    [finding] = InsightEngine(session, ctx).evaluate(MARCH)

    assert finding.insight_type == "top_merchant_change"
    assert finding.body == "Airline replaced Grocer as your biggest spend."
    assert finding.data["current"] == {"id": airline.id, "amount_cents": 9000}


def test_missing_income(session, ctx, checking) -> None:
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 3, 2))

    [finding] = InsightEngine(session, ctx).evaluate(MARCH)

    assert finding.insight_type == "missing_income"
    assert finding.data == {"transaction_count": 1}


def test_quiet_month_has_no_findings(session, ctx) -> None:
    assert InsightEngine(session, ctx).evaluate(MARCH) == []


def test_regeneration_replaces_previous_rows(session, ctx, checking) -> None:
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 3, 2))
    engine = InsightEngine(session, ctx)
    engine.generate("2026-02")
    engine.generate(MARCH)
    engine.generate(MARCH)

    count = session.scalar(
        select(func.count(Insight.id)).where(Insight.source_month == MARCH)
    )
    assert count == 1
    [row] = engine.list_insights()
    assert row.data["month"] == MARCH


def test_mark_read(session, ctx, checking) -> None:
    add_txn(session, checking, TransactionType.expense, 1000, date(2026, 3, 2))
    engine = InsightEngine(session, ctx)
    [row] = engine.generate(MARCH)

    assert engine.mark_read([row.id, "unknown"]) == 1
    assert engine.list_insights(only_unread=True) == []
    assert engine.mark_read([]) == 0


def test_foreign_currency_compared_in_home_currency(session, ledger, ctx, checking, converter) -> None:
    food = _named(session, Category, ledger, "Food")
    add_txn(session, checking, TransactionType.income, 100000, date(2026, 3, 1))
    add_txn(session, checking, TransactionType.expense, 10000, date(2026, 2, 5), category_id=food.id)
    # 12000 EUR cents is 13200 USD cents at 1.1, a 32% rise.
    add_txn(
        session,
        checking,
        TransactionType.expense,
        12000,
        date(2026, 3, 5),
        category_id=food.id,
        currency_code="EUR",
    )

    [finding] = InsightEngine(session, ctx, converter).evaluate(MARCH)

    assert finding.insight_type == "category_spike"
    assert finding.data["current_cents"] == 13200


@pytest.mark.parametrize("month", ["2026-3", "March"])
def test_bad_month(session, ctx, month) -> None:
    with pytest.raises(InvalidInputError):
        InsightEngine(session, ctx).evaluate(month)
