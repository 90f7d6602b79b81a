import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from access import AuthContext, LedgerAccess
from errors import InvalidInputError, NotFoundError
from fx_rates import CurrencyConverter
from models import Subscription, SubscriptionInterval, Transaction, TransactionType
from periods import add_months, local_today
from reconciliation import post_to_account


logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 45
# Upper bound on occurrences walked per subscription in one run.
MAX_OCCURRENCES = 2000

_MONTH_STEPS = {
    SubscriptionInterval.monthly: 1,
    SubscriptionInterval.quarterly: 3,
    SubscriptionInterval.yearly: 12,
}


def step_date(sub: Subscription, from_date: date) -> date:
    if sub.interval == SubscriptionInterval.daily:
        return from_date + timedelta(days=1)
    if sub.interval == SubscriptionInterval.weekly:
        return from_date + timedelta(weeks=1)
    anchor_day = (sub.anchor_date or sub.next_due_date or from_date).day
    return add_months(from_date, _MONTH_STEPS[sub.interval], desired_day=anchor_day)


def occurrence_key(subscription_id: str, due: date) -> str:
    return f"sub_{subscription_id}_{due.isoformat()}"


@dataclass
class GenerationResult:
    processed: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    horizon_days: int = DEFAULT_HORIZON_DAYS

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
            "horizon_days": self.horizon_days,
        }


class SubscriptionEngine:
    """Materializes due subscription occurrences as expense transactions."""

    def __init__(
        self,
        session: Session,
        ctx: AuthContext,
        converter: Optional[CurrencyConverter] = None,
    ) -> None:
        self.session = session
        self.ctx = ctx
        self.converter = converter

    def _converter(self) -> CurrencyConverter:
        if self.converter is None:
            self.converter = CurrencyConverter(self.session)
        return self.converter

    def active_subscriptions(self) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.ledger_id == self.ctx.ledger_id,
                Subscription.is_active.is_(True),
            )
            .order_by(Subscription.next_due_date, Subscription.id)
        )
        return list(self.session.scalars(stmt))

    def _exists(self, external_id: str) -> bool:
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.ledger_id == self.ctx.ledger_id,
                Transaction.external_id == external_id,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def _post_occurrence(self, sub: Subscription, due: date, external_id: str) -> None:
        account = LedgerAccess(self.session).account(self.ctx, sub.account_id)
        with self.session.begin_nested():
            txn = Transaction(
                ledger_id=self.ctx.ledger_id,
                account_id=sub.account_id,
                category_id=sub.category_id,
                merchant_id=sub.merchant_id,
                type=TransactionType.expense,
                amount_cents=sub.amount_cents,
                currency_code=sub.currency_code,
                date=due,
                description=f"Subscription: {sub.name}",
                notes=f"Auto-generated from subscription {sub.id}",
                external_id=external_id,
                created_by=self.ctx.user_id,
            )
            self.session.add(txn)
            converter = (
                self._converter() if sub.currency_code != account.currency_code else None
            )
            post_to_account(account, txn, converter)
            self.session.flush()

    def catch_up(
        self, sub: Subscription, today: date, horizon: date, result: GenerationResult
    ) -> None:
        original_due = sub.next_due_date
        due = original_due
        iterations = 0
        while due <= horizon and iterations < MAX_OCCURRENCES:
            iterations += 1
            if due < today:
                due = step_date(sub, due)
                continue

            external_id = occurrence_key(sub.id, due)
            if self._exists(external_id):
                result.skipped += 1
                due = step_date(sub, due)
                continue
            try:
                self._post_occurrence(sub, due, external_id)
            except IntegrityError:
                # Another run materialized this occurrence first.
                result.skipped += 1
            except (SQLAlchemyError, NotFoundError):
                result.failed += 1
                logger.warning(
                    f"subscription_post_failed: ledger={self.ctx.ledger_id} "
                    f"subscription={sub.id} due={due}",
                    exc_info=True,
                )
                # Resume from the failed occurrence on the next run.
                break
            else:
                result.created += 1
            due = step_date(sub, due)

        if iterations >= MAX_OCCURRENCES:
            logger.warning(
                f"subscription_walk_truncated: ledger={self.ctx.ledger_id} "
                f"subscription={sub.id} resume_at={due}"
            )
        if due > original_due:
            sub.next_due_date = due
            self.session.flush()

    def generate(
        self,
        horizon_days: int = DEFAULT_HORIZON_DAYS,
        *,
        today: Optional[date] = None,
    ) -> GenerationResult:
        self.ctx.require(write=True)
        LedgerAccess(self.session).ledger(self.ctx.ledger_id)
        if horizon_days < 0:
            raise InvalidInputError("Horizon must not be negative")
        today = today or local_today()
        horizon = today + timedelta(days=horizon_days)

        subs = self.active_subscriptions()
        result = GenerationResult(processed=len(subs), horizon_days=horizon_days)
        for sub in subs:
            self.catch_up(sub, today, horizon, result)

        logger.info(
            f"subscriptions_generated: ledger={self.ctx.ledger_id} "
            f"processed={result.processed} created={result.created} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        return result
