from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from access import AuthContext, LedgerAccess
from fx_rates import CurrencyConverter
from models import MonthlySummary, Transaction, TransactionType
from periods import month_bounds, shift_year_month


logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"


@dataclass
class MonthTotals:
    year_month: str
    income_cents: int = 0
    expense_cents: int = 0
    transfers_cents: int = 0
    refunds_cents: int = 0
    transaction_count: int = 0
    category_breakdown: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def net_savings_cents(self) -> int:
        # Refunds reduce net cost without counting as income.
        return self.income_cents - self.expense_cents + self.refunds_cents

    def add(
        self,
        txn_type: TransactionType,
        amount_cents: int,
        category_id: Optional[str],
    ) -> None:
        self.transaction_count += 1
        if txn_type == TransactionType.income:
            self.income_cents += amount_cents
            self._bucket(category_id)["income"] += amount_cents
        elif txn_type == TransactionType.expense:
            self.expense_cents += amount_cents
            self._bucket(category_id)["expense"] += amount_cents
        elif txn_type == TransactionType.transfer:
            # Both legs of a transfer count.
            self.transfers_cents += amount_cents
        elif txn_type == TransactionType.refund:
            self.refunds_cents += amount_cents

    def _bucket(self, category_id: Optional[str]) -> dict[str, int]:
        key = category_id or UNCATEGORIZED
        if key not in self.category_breakdown:
            self.category_breakdown[key] = {"income": 0, "expense": 0}
        return self.category_breakdown[key]


@dataclass
class MonthResult:
    summary: MonthlySummary
    totals: MonthTotals

    def as_dict(self) -> dict[str, object]:
        return {
            "year_month": self.summary.year_month,
            "currency_code": self.summary.currency_code,
            "total_income_cents": self.summary.total_income_cents,
            "total_expense_cents": self.summary.total_expense_cents,
            "total_transfers_cents": self.summary.total_transfers_cents,
            "total_refunds_cents": self.summary.total_refunds_cents,
            "net_savings_cents": self.summary.net_savings_cents,
            "transaction_count": self.summary.transaction_count,
            "category_breakdown": self.totals.category_breakdown,
        }


class MonthlyAggregationEngine:
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

    def compute_month(self, year_month: str, currency_code: str) -> MonthTotals:
        start, next_start = month_bounds(year_month)
        rows = self.session.execute(
            select(
                Transaction.type,
                Transaction.amount_cents,
                Transaction.currency_code,
                Transaction.category_id,
            )
            .where(
                Transaction.ledger_id == self.ctx.ledger_id,
                Transaction.date >= start,
                Transaction.date < next_start,
            )
            .order_by(Transaction.date.asc())
        ).all()

        amounts = [row.amount_cents for row in rows]
        if any(row.currency_code != currency_code for row in rows):
            amounts = self._converter().batch_convert(
                [(row.amount_cents, row.currency_code) for row in rows],
                currency_code,
            )

        totals = MonthTotals(year_month=year_month)
        for row, amount in zip(rows, amounts):
            totals.add(row.type, amount, row.category_id)
        return totals

    def _upsert(self, totals: MonthTotals, currency_code: str) -> MonthlySummary:
        summary = self.session.scalar(
            select(MonthlySummary).where(
                MonthlySummary.ledger_id == self.ctx.ledger_id,
                MonthlySummary.year_month == totals.year_month,
            )
        )
        if not summary:
            summary = MonthlySummary(
                ledger_id=self.ctx.ledger_id,
                year_month=totals.year_month,
            )
            self.session.add(summary)

        summary.currency_code = currency_code
        summary.total_income_cents = totals.income_cents
        summary.total_expense_cents = totals.expense_cents
        summary.total_transfers_cents = totals.transfers_cents
        summary.total_refunds_cents = totals.refunds_cents
        summary.net_savings_cents = totals.net_savings_cents
        summary.transaction_count = totals.transaction_count
        summary.computed_at = datetime.utcnow()
        self.session.flush()
        return summary

    def aggregate(self, month: str, backfill_months: int = 0) -> list[MonthResult]:
        """Recompute ``backfill_months + 1`` months ending at ``month``, oldest first."""
        self.ctx.require(write=True)
        ledger = LedgerAccess(self.session).ledger(self.ctx.ledger_id)
        months = [
            shift_year_month(month, -offset)
            for offset in range(max(0, backfill_months), -1, -1)
        ]

        results: list[MonthResult] = []
        for year_month in months:
            totals = self.compute_month(year_month, ledger.currency_code)
            summary = self._upsert(totals, ledger.currency_code)
            results.append(MonthResult(summary=summary, totals=totals))
            logger.info(
                f"summary_upserted: ledger={self.ctx.ledger_id} month={year_month} "
                f"income={totals.income_cents} expense={totals.expense_cents} "
                f"txns={totals.transaction_count}"
            )
        return results

    def list_summaries(self, limit: int = 12) -> list[MonthlySummary]:
        stmt = (
            select(MonthlySummary)
            .where(MonthlySummary.ledger_id == self.ctx.ledger_id)
            .order_by(MonthlySummary.year_month.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt))
