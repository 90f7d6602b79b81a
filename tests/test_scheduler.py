from contextlib import contextmanager
from datetime import date

import pytest
from sqlalchemy import func, select

import scheduler
from conftest import TODAY
from models import (
    Insight,
    Ledger,
    MonthlySummary,
    Subscription,
    SubscriptionInterval,
    Transaction,
    TransactionType,
)


@pytest.fixture
def manager(session_factory, monkeypatch):
    @contextmanager
    def scope():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    monkeypatch.setattr(scheduler, "session_scope", scope)
    monkeypatch.setattr(scheduler, "local_today", lambda: TODAY)
    return scheduler.SchedulerManager()


@pytest.fixture
def seeded(session, ledger, checking):
    session.add(
        Subscription(
            ledger_id=ledger.id,
            account_id=checking.id,
            name="Paper",
            amount_cents=900,
            currency_code="USD",
            interval=SubscriptionInterval.monthly,
            next_due_date=TODAY,
        )
    )
    session.add(Ledger(name="Dormant", currency_code="USD", is_active=False))
    session.commit()
    return ledger


def test_daily_run_materializes_and_aggregates(manager, seeded, session) -> None:
    result = manager.run_daily_jobs("test")

    assert result == {"ledgers": 1, "failed": 0}
    session.expire_all()
    dates = session.scalars(select(Transaction.date).order_by(Transaction.date)).all()
    assert dates == [TODAY, date(2026, 4, 15)]
    months = session.scalars(
        select(MonthlySummary.year_month).order_by(MonthlySummary.year_month)
    ).all()
    assert months == ["2026-02", "2026-03"]


def test_monthly_run_writes_previous_month_insights(manager, seeded, session, checking) -> None:
    session.add(
        Transaction(
            ledger_id=seeded.id,
            account_id=checking.id,
            type=TransactionType.expense,
            amount_cents=1000,
            currency_code="USD",
            date=date(2026, 2, 10),
        )
    )
    session.commit()

    assert manager.run_monthly_jobs("test") == {"ledgers": 1, "failed": 0}
    session.expire_all()
    assert session.scalar(select(Insight.source_month)) == "2026-02"


def test_failing_ledger_does_not_stop_the_run(manager, seeded) -> None:
    seen = []

    def flaky(session, ledger_id, cache, today):
        seen.append(ledger_id)
        raise RuntimeError("boom")

    assert manager._for_each_ledger(flaky, "test") == {"ledgers": 0, "failed": 1}
    assert seen == [seeded.id]


def test_every_active_ledger_is_visited(manager, seeded, session) -> None:
    other = Ledger(name="Second", currency_code="EUR")
    session.add(other)
    session.commit()
    seen = []

    result = manager._for_each_ledger(lambda s, lid, c, t: seen.append(lid), "test")

    assert result == {"ledgers": 2, "failed": 0}
    assert sorted(seen) == sorted([seeded.id, other.id])
    total = session.scalar(select(func.count(Ledger.id)))
    assert total == 3
