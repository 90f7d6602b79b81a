"""Month-over-month findings for a ledger.

Every rule is independent. Amounts are compared in the ledger's home
currency and thresholds are evaluated on integer cents.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from access import AuthContext, LedgerAccess
from fx_rates import CurrencyConverter
from models import Category, Insight, Merchant, Subscription, Transaction, TransactionType
from periods import month_bounds, shift_year_month


logger = logging.getLogger(__name__)

SPIKE_RATIO = Decimal("1.3")
DROP_RATIO = Decimal("0.5")
DROP_MIN_PREVIOUS_CENTS = 5_000
SUBSCRIPTION_INCOME_SHARE = Decimal("0.15")


def percent(numerator: int, denominator: int) -> int:
    value = Decimal(numerator) * 100 / Decimal(denominator)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money(cents: int, currency: str) -> str:
    return f"{Decimal(cents) / 100:,.2f} {currency}"


@dataclass
class MonthActivity:
    transaction_count: int = 0
    income_cents: int = 0
    by_category: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    by_merchant: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def top_merchant(self) -> Optional[tuple[str, int]]:
        if not self.by_merchant:
            return None
        return min(self.by_merchant.items(), key=lambda kv: (-kv[1], kv[0]))


@dataclass
class Finding:
    title: str
    body: str
    insight_type: str
    data: dict[str, Any]


class InsightEngine:
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

    def _to_home(self, items: Sequence[tuple[int, str]], currency: str) -> list[int]:
        if all(code == currency for _, code in items):
            return [amount for amount, _ in items]
        return self._converter().batch_convert(items, currency)

    def activity(self, year_month: str, currency: str) -> MonthActivity:
        start, next_start = month_bounds(year_month)
        rows = self.session.execute(
            select(
                Transaction.type,
                Transaction.amount_cents,
                Transaction.currency_code,
                Transaction.category_id,
                Transaction.merchant_id,
            ).where(
                Transaction.ledger_id == self.ctx.ledger_id,
                Transaction.date >= start,
                Transaction.date < next_start,
                Transaction.type.in_([TransactionType.income, TransactionType.expense]),
            )
        ).all()
        amounts = self._to_home([(r.amount_cents, r.currency_code) for r in rows], currency)

        activity = MonthActivity(transaction_count=len(rows))
        for row, amount in zip(rows, amounts):
            if row.type == TransactionType.income:
                activity.income_cents += amount
                continue
            if row.category_id:
                activity.by_category[row.category_id] += amount
            if row.merchant_id:
                activity.by_merchant[row.merchant_id] += amount
        return activity

    def _names(self, model, ids: set[str]) -> dict[str, str]:
        if not ids:
            return {}
        rows = self.session.execute(
            select(model.id, model.name).where(
                model.ledger_id == self.ctx.ledger_id, model.id.in_(sorted(ids))
            )
        ).all()
        return {row.id: row.name for row in rows}

    def evaluate(self, month: str) -> list[Finding]:
        ledger = LedgerAccess(self.session).ledger(self.ctx.ledger_id)
        currency = ledger.currency_code
        current = self.activity(month, currency)
        previous = self.activity(shift_year_month(month, -1), currency)

        category_names = self._names(
            Category, set(current.by_category) | set(previous.by_category)
        )
        findings: list[Finding] = []

        for category_id, spent in sorted(current.by_category.items()):
            before = previous.by_category.get(category_id, 0)
            if before > 0 and Decimal(spent) >= Decimal(before) * SPIKE_RATIO:
                pct = percent(spent - before, before)
                name = category_names.get(category_id, "Category")
                findings.append(
                    Finding(
                        title=f"{name} spending up {pct}%",
                        body=(
                            f"{money(spent, currency)} this month vs "
                            f"{money(before, currency)} last month."
                        ),
                        insight_type="category_spike",
                        data={
                            "category_id": category_id,
                            "current_cents": spent,
                            "previous_cents": before,
                            "pct": pct,
                        },
                    )
                )

        for category_id, before in sorted(previous.by_category.items()):
            spent = current.by_category.get(category_id, 0)
            if before > DROP_MIN_PREVIOUS_CENTS and Decimal(spent) <= Decimal(before) * DROP_RATIO:
                pct = percent(before - spent, before)
                name = category_names.get(category_id, "Category")
                findings.append(
                    Finding(
                        title=f"{name} spending down {pct}%",
                        body=(
                            f"{money(spent, currency)} this month vs "
                            f"{money(before, currency)} last month."
                        ),
                        insight_type="category_drop",
                        data={
                            "category_id": category_id,
                            "current_cents": spent,
                            "previous_cents": before,
                            "pct": pct,
                        },
                    )
                )

        subs = self.session.execute(
            select(Subscription.amount_cents, Subscription.currency_code).where(
                Subscription.ledger_id == self.ctx.ledger_id,
                Subscription.is_active.is_(True),
            )
        ).all()
        if subs and current.income_cents > 0:
            sub_total = sum(
                self._to_home([(s.amount_cents, s.currency_code) for s in subs], currency)
            )
            if Decimal(sub_total) > Decimal(current.income_cents) * SUBSCRIPTION_INCOME_SHARE:
                pct = percent(sub_total, current.income_cents)
                findings.append(
                    Finding(
                        title=f"Subscriptions are {pct}% of income",
                        body=(
                            f"{len(subs)} active subscriptions total "
                            f"{money(sub_total, currency)}."
                        ),
                        insight_type="subscription_creep",
                        data={
                            "total_cost_cents": sub_total,
                            "income_cents": current.income_cents,
                            "pct": pct,
                            "count": len(subs),
                        },
                    )
                )

        current_top = current.top_merchant()
        previous_top = previous.top_merchant()
        if current_top and previous_top and current_top[0] != previous_top[0]:
            names = self._names(Merchant, {current_top[0], previous_top[0]})
            now_name = names.get(current_top[0], "A new merchant")
            was_name = names.get(previous_top[0], "last month's top merchant")
            findings.append(
                Finding(
                    title="Top merchant changed",
                    body=f"{now_name} replaced {was_name} as your biggest spend.",
                    insight_type="top_merchant_change",
                    data={
                        "current": {"id": current_top[0], "amount_cents": current_top[1]},
                        "previous": {
                            "id": previous_top[0],
                            "amount_cents": previous_top[1],
                        },
                    },
                )
            )

        if current.transaction_count > 0 and current.income_cents == 0:
            findings.append(
                Finding(
                    title="No income recorded this month",
                    body="You have transactions but no income entries.",
                    insight_type="missing_income",
                    data={"transaction_count": current.transaction_count},
                )
            )
        return findings

    def generate(self, month: str) -> list[Insight]:
        """Replace every insight tagged with ``month`` by a fresh set."""
        self.ctx.require(write=True)
        findings = self.evaluate(month)

        self.session.execute(
            delete(Insight).where(
                Insight.ledger_id == self.ctx.ledger_id,
                Insight.source_month == month,
            )
        )
        rows = [
            Insight(
                ledger_id=self.ctx.ledger_id,
                title=f.title,
                body=f.body,
                insight_type=f.insight_type,
                source_month=month,
                data={**f.data, "month": month},
                is_read=False,
            )
            for f in findings
        ]
        self.session.add_all(rows)
        self.session.flush()
        logger.info(
            f"insights_generated: ledger={self.ctx.ledger_id} month={month} "
            f"count={len(rows)}"
        )
        return rows

    def list_insights(self, *, only_unread: bool = False) -> list[Insight]:
        stmt = (
            select(Insight)
            .where(Insight.ledger_id == self.ctx.ledger_id)
            .order_by(Insight.created_at.desc())
        )
        if only_unread:
            stmt = stmt.where(Insight.is_read.is_(False))
        return list(self.session.scalars(stmt))

    def mark_read(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        result = self.session.execute(
            update(Insight)
            .where(Insight.ledger_id == self.ctx.ledger_id, Insight.id.in_(list(ids)))
            .values(is_read=True)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0
