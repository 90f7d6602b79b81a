from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from access import AuthContext
from database import Base, configure_sqlite
from errors import UpstreamUnavailable
from fx_rates import PROVIDER, CurrencyConverter, FxQuote, RateCache
from models import (
    Account,
    Ledger,
    LedgerMember,
    LedgerRole,
    Transaction,
    TransactionType,
)


TODAY = date(2026, 3, 15)
OWNER = "user-owner"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class FakeFxSource:
    """Stands in for the HTTP rate source; records every quote request."""

    def __init__(self, rates: Optional[dict] = None, fail: bool = False) -> None:
        self.rates = {k: Decimal(str(v)) for k, v in (rates or {}).items()}
        self.fail = fail
        self.calls: list[tuple[str, str, date]] = []

    def quote(self, base, quote, on_date, *, today=None):
        self.calls.append((base, quote, on_date))
        if self.fail or (base, quote) not in self.rates:
            raise UpstreamUnavailable(f"no rate for {base}->{quote}")
        return FxQuote(
            provider=PROVIDER,
            base=base,
            quote=quote,
            rate=self.rates[(base, quote)],
            rate_date=on_date,
            fetched_at=datetime.now(timezone.utc),
        )


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(eng, wal=False)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def ledger(session) -> Ledger:
    ledger = Ledger(name="Household", currency_code="USD")
    session.add(ledger)
    session.flush()
    session.add(LedgerMember(ledger_id=ledger.id, user_id=OWNER, role=LedgerRole.owner))
    session.flush()
    return ledger


@pytest.fixture
def ctx(ledger) -> AuthContext:
    return AuthContext(user_id=OWNER, ledger_id=ledger.id, role=LedgerRole.owner)


@pytest.fixture
def checking(session, ledger) -> Account:
    account = Account(ledger_id=ledger.id, name="Checking", currency_code="USD")
    session.add(account)
    session.flush()
    return account


@pytest.fixture
def savings(session, ledger) -> Account:
    account = Account(ledger_id=ledger.id, name="Savings", currency_code="USD")
    session.add(account)
    session.flush()
    return account


@pytest.fixture
def fx_source() -> FakeFxSource:
    return FakeFxSource({("EUR", "USD"): "1.1", ("GBP", "USD"): "1.25"})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def converter(session, fx_source, clock) -> CurrencyConverter:
    return CurrencyConverter(
        session,
        cache=RateCache(3600, clock=clock),
        source=fx_source,
        today=TODAY,
        max_workers=4,
    )


def add_txn(
    session: Session,
    account: Account,
    txn_type: TransactionType,
    amount_cents: int,
    on: date,
    **fields,
) -> Transaction:
    fields.setdefault("currency_code", account.currency_code)
    txn = Transaction(
        ledger_id=account.ledger_id,
        account_id=account.id,
        type=txn_type,
        amount_cents=amount_cents,
        date=on,
        **fields,
    )
    session.add(txn)
    session.flush()
    return txn
