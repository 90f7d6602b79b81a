from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from access import AuthContext, LedgerAccess
from audit import record_audit
from fx_rates import CurrencyConverter
from models import (
    ReconciliationSnapshot,
    Transaction,
    TransactionType,
    TransferDirection,
)


logger = logging.getLogger(__name__)


def signed_effect(txn_type: TransactionType, amount_cents: int, direction=None) -> int:
    """Effect of one transaction on the balance of its own account."""
    if txn_type in (TransactionType.income, TransactionType.refund):
        return amount_cents
    if txn_type == TransactionType.expense:
        return -amount_cents
    if txn_type == TransactionType.adjustment:
        # Adjustments carry their own sign.
        return amount_cents
    if txn_type == TransactionType.transfer:
        if direction == TransferDirection.outgoing:
            return -amount_cents
        if direction == TransferDirection.incoming:
            return amount_cents
    return 0


def replay_balance(effects: Iterable[int]) -> int:
    return sum(effects, 0)


@dataclass
class ReconcileResult:
    snapshot_id: str
    account_id: str
    snapshot_date: date
    statement_balance_cents: int
    computed_balance_cents: int
    difference_cents: int
    is_reconciled: bool
    transactions_checked: int
    transactions_marked: int

    def as_dict(self) -> dict[str, object]:
        return {
            "snapshot_id": self.snapshot_id,
            "account_id": self.account_id,
            "snapshot_date": self.snapshot_date.isoformat(),
            "statement_balance_cents": self.statement_balance_cents,
            "computed_balance_cents": self.computed_balance_cents,
            "difference_cents": self.difference_cents,
            "is_reconciled": self.is_reconciled,
            "transactions_checked": self.transactions_checked,
            "transactions_marked": self.transactions_marked,
        }


class ReconciliationEngine:
    def __init__(
        self,
        session: Session,
        ctx: AuthContext,
        converter: Optional[CurrencyConverter] = None,
    ) -> None:
        self.session = session
        self.ctx = ctx
        self.converter = converter

    def computed_balance(self, account_id: str, as_of: date) -> tuple[int, int]:
        """Replay every transaction on the account up to ``as_of``.

        Returns ``(balance_cents, transactions_checked)``. Amounts in a
        currency other than the account's are converted first.
        """
        account = LedgerAccess(self.session).account(self.ctx, account_id)
        rows = self.session.execute(
            select(
                Transaction.type,
                Transaction.amount_cents,
                Transaction.currency_code,
                Transaction.transfer_direction,
            ).where(
                Transaction.ledger_id == self.ctx.ledger_id,
                Transaction.account_id == account.id,
                Transaction.date <= as_of,
            )
        ).all()

        amounts = [row.amount_cents for row in rows]
        if any(row.currency_code != account.currency_code for row in rows):
            converter = self.converter or CurrencyConverter(self.session)
            amounts = converter.batch_convert(
                [(row.amount_cents, row.currency_code) for row in rows],
                account.currency_code,
            )

        balance = replay_balance(
            signed_effect(row.type, amount, row.transfer_direction)
            for row, amount in zip(rows, amounts)
        )
        return balance, len(rows)

    def reconcile(
        self, account_id: str, snapshot_date: date, statement_balance_cents: int
    ) -> ReconcileResult:
        self.ctx.require(write=True)
        computed, checked = self.computed_balance(account_id, snapshot_date)
        difference = statement_balance_cents - computed
        reconciled = abs(difference) < 1

        snapshot = ReconciliationSnapshot(
            ledger_id=self.ctx.ledger_id,
            account_id=account_id,
            snapshot_date=snapshot_date,
            statement_balance_cents=statement_balance_cents,
            computed_balance_cents=computed,
            difference_cents=difference,
            is_reconciled=reconciled,
            transactions_checked=checked,
            reconciled_by=self.ctx.user_id,
            notes=(
                "Balances match"
                if reconciled
                else f"Discrepancy: {abs(difference) / 100:.2f}"
            ),
        )
        self.session.add(snapshot)
        self.session.flush()

        marked = 0
        if reconciled:
            marked = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.ledger_id == self.ctx.ledger_id,
                    Transaction.account_id == account_id,
                    Transaction.date <= snapshot_date,
                    Transaction.is_reconciled.is_(False),
                )
                .values(is_reconciled=True, reconciled_at=datetime.utcnow())
                .execution_options(synchronize_session="fetch")
            ).rowcount or 0

        record_audit(
            self.session,
            ledger_id=self.ctx.ledger_id,
            table_name="reconciliation_snapshots",
            record_id=snapshot.id,
            action="RECONCILE",
            actor_id=self.ctx.user_id,
            after_data={
                "account_id": account_id,
                "snapshot_date": snapshot_date.isoformat(),
                "statement_balance_cents": statement_balance_cents,
                "computed_balance_cents": computed,
                "difference_cents": difference,
                "is_reconciled": reconciled,
                "txn_count": checked,
            },
        )
        logger.info(
            f"reconcile: ledger={self.ctx.ledger_id} account={account_id} "
            f"date={snapshot_date} difference_cents={difference} "
            f"reconciled={reconciled}"
        )
        return ReconcileResult(
            snapshot_id=snapshot.id,
            account_id=account_id,
            snapshot_date=snapshot_date,
            statement_balance_cents=statement_balance_cents,
            computed_balance_cents=computed,
            difference_cents=difference,
            is_reconciled=reconciled,
            transactions_checked=checked,
            transactions_marked=marked,
        )

    def history(self, account_id: str) -> list[ReconciliationSnapshot]:
        LedgerAccess(self.session).account(self.ctx, account_id)
        stmt = (
            select(ReconciliationSnapshot)
            .where(
                ReconciliationSnapshot.ledger_id == self.ctx.ledger_id,
                ReconciliationSnapshot.account_id == account_id,
            )
            .order_by(
                ReconciliationSnapshot.snapshot_date.desc(),
                ReconciliationSnapshot.created_at.desc(),
            )
        )
        return list(self.session.scalars(stmt))


def post_to_account(account, txn: Transaction, converter: Optional[CurrencyConverter]) -> int:
    """Apply ``txn`` to the cached balance of ``account`` and return the delta."""
    amount = txn.amount_cents
    if txn.currency_code != account.currency_code:
        if converter is None:
            raise ValueError("A converter is required for cross-currency postings")
        amount = converter.convert(
            amount, txn.currency_code, account.currency_code, txn.date
        )
    delta = signed_effect(txn.type, amount, txn.transfer_direction)
    account.balance_cents = (account.balance_cents or 0) + delta
    return delta
