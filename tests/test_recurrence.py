from datetime import date

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

import recurrence
from access import AuthContext
from conftest import TODAY
from errors import ForbiddenError, InvalidInputError
from models import LedgerRole, Subscription, SubscriptionInterval, Transaction
from recurrence import SubscriptionEngine, occurrence_key, step_date


def _sub(session, account, interval=SubscriptionInterval.monthly, **fields) -> Subscription:
    fields.setdefault("next_due_date", TODAY)
    fields.setdefault("currency_code", account.currency_code)
    sub = Subscription(
        ledger_id=account.ledger_id,
        account_id=account.id,
        name="Streaming",
        amount_cents=1599,
        interval=interval,
        **fields,
    )
    session.add(sub)
    session.flush()
    return sub


def _txns(session) -> list[Transaction]:
    return session.scalars(select(Transaction).order_by(Transaction.date)).all()


@pytest.mark.parametrize(
    "interval,start,expected",
    [
        (SubscriptionInterval.daily, date(2026, 2, 28), date(2026, 3, 1)),
        (SubscriptionInterval.weekly, date(2026, 12, 29), date(2027, 1, 5)),
        (SubscriptionInterval.monthly, date(2026, 1, 31), date(2026, 2, 28)),
        (SubscriptionInterval.quarterly, date(2026, 11, 30), date(2027, 2, 28)),
        (SubscriptionInterval.yearly, date(2024, 2, 29), date(2025, 2, 28)),
    ],
)
def test_step_date(interval, start, expected) -> None:
    sub = Subscription(interval=interval, next_due_date=start, anchor_date=start)
    assert step_date(sub, start) == expected


def test_month_end_anchor_is_kept_after_short_month() -> None:
    sub = Subscription(
        interval=SubscriptionInterval.monthly,
        next_due_date=date(2026, 2, 28),
        anchor_date=date(2026, 1, 31),
    )
    assert step_date(sub, date(2026, 2, 28)) == date(2026, 3, 31)


def test_generates_occurrences_within_horizon(session, ctx, checking) -> None:
    sub = _sub(session, checking)

    result = SubscriptionEngine(session, ctx).generate(45, today=TODAY)

    assert result.as_dict() == {
        "processed": 1,
        "created": 2,
        "skipped": 0,
        "failed": 0,
        "horizon_days": 45,
    }
    txns = _txns(session)
    assert [t.date for t in txns] == [date(2026, 3, 15), date(2026, 4, 15)]
    assert txns[0].external_id == occurrence_key(sub.id, date(2026, 3, 15))
    assert txns[0].description == "Subscription: Streaming"
    assert txns[0].notes == f"Auto-generated from subscription {sub.id}"
    assert txns[0].created_by == ctx.user_id
    assert sub.next_due_date == date(2026, 5, 15)
    assert checking.balance_cents == -3198


def test_second_run_creates_nothing(session, ctx, checking) -> None:
    _sub(session, checking)
    engine = SubscriptionEngine(session, ctx)
    first = engine.generate(45, today=TODAY)
    second = engine.generate(45, today=TODAY)

    assert first.created == 2
    assert second.created == 0
    assert len(_txns(session)) == 2


def test_existing_external_ids_are_skipped(session, ctx, checking) -> None:
    sub = _sub(session, checking)
    engine = SubscriptionEngine(session, ctx)
    engine.generate(45, today=TODAY)
    # Rewind the schedule; the materialized dates must not be duplicated.
    sub.next_due_date = TODAY
    session.flush()

    result = engine.generate(45, today=TODAY)

    assert result.created == 0
    assert result.skipped == 2
    assert len(_txns(session)) == 2


def test_past_due_dates_are_skipped(session, ctx, checking) -> None:
    sub = _sub(session, checking, SubscriptionInterval.weekly, next_due_date=date(2026, 3, 1))

    result = SubscriptionEngine(session, ctx).generate(0, today=TODAY)

    assert result.created == 1
    assert [t.date for t in _txns(session)] == [TODAY]
    assert sub.next_due_date == date(2026, 3, 22)


def test_inactive_subscriptions_are_ignored(session, ctx, checking) -> None:
    _sub(session, checking, is_active=False)

    result = SubscriptionEngine(session, ctx).generate(45, today=TODAY)

    assert result.processed == 0
    assert _txns(session) == []


def test_foreign_currency_subscription_posts_converted_balance(session, ctx, checking, converter) -> None:
    _sub(session, checking, currency_code="EUR", next_due_date=TODAY)

    SubscriptionEngine(session, ctx, converter).generate(0, today=TODAY)

    [txn] = _txns(session)
    assert txn.currency_code == "EUR"
    assert txn.amount_cents == 1599
    assert checking.balance_cents == -1759


def test_negative_horizon_rejected(session, ctx) -> None:
    with pytest.raises(InvalidInputError):
        SubscriptionEngine(session, ctx).generate(-1, today=TODAY)


def test_viewer_cannot_generate(session, ledger) -> None:
    viewer = AuthContext(user_id="v", ledger_id=ledger.id, role=LedgerRole.viewer)
    with pytest.raises(ForbiddenError):
        SubscriptionEngine(session, viewer).generate(today=TODAY)


def test_failed_occurrence_stops_and_is_retried(session, ctx, checking, monkeypatch) -> None:
    sub = _sub(session, checking)
    post = recurrence.post_to_account

    def flaky_post(account, txn, converter):
        if txn.date == date(2026, 4, 15):
            raise OperationalError("INSERT INTO transactions", {}, Exception("disk I/O error"))
        return post(account, txn, converter)

    monkeypatch.setattr(recurrence, "post_to_account", flaky_post)
    engine = SubscriptionEngine(session, ctx)

    result = engine.generate(45, today=TODAY)

    assert (result.created, result.skipped, result.failed) == (1, 0, 1)
    assert [t.date for t in _txns(session)] == [TODAY]
    assert sub.next_due_date == date(2026, 4, 15)
    assert checking.balance_cents == -1599

    monkeypatch.setattr(recurrence, "post_to_account", post)
    retry = engine.generate(45, today=TODAY)

    assert (retry.created, retry.skipped, retry.failed) == (1, 0, 0)
    assert [t.date for t in _txns(session)] == [TODAY, date(2026, 4, 15)]
    assert sub.next_due_date == date(2026, 5, 15)
