from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from access import AuthContext, LedgerAccess
from audit import record_audit
from errors import ForbiddenError, InvalidInputError, NotFoundError
from fx_rates import CurrencyConverter, normalize_currency
from models import (
    Account,
    Budget,
    Category,
    ClassificationRule,
    ExchangeRate,
    Ledger,
    LedgerMember,
    LedgerRole,
    Merchant,
    Subscription,
    Transaction,
    TransactionType,
    TransferDirection,
    new_id,
)
from periods import Period, budget_window
from reconciliation import post_to_account
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    LedgerIn,
    MemberIn,
    MerchantIn,
    RefundIn,
    RuleIn,
    SubscriptionIn,
    TransactionIn,
    TransferIn,
)


logger = logging.getLogger(__name__)


class LedgerService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: LedgerIn, owner_id: str) -> Ledger:
        ledger = Ledger(name=data.name.strip(), currency_code=data.currency_code)
        self.session.add(ledger)
        self.session.flush()
        self.session.add(
            LedgerMember(ledger_id=ledger.id, user_id=owner_id, role=LedgerRole.owner)
        )
        self.session.flush()
        logger.info(f"ledger_created: ledger={ledger.id} owner={owner_id}")
        return ledger

    def add_member(self, ctx: AuthContext, data: MemberIn) -> LedgerMember:
        if ctx.role not in (LedgerRole.owner, LedgerRole.admin):
            raise ForbiddenError("Only owners and admins manage members")
        existing = self.session.scalar(
            select(LedgerMember).where(
                LedgerMember.ledger_id == ctx.ledger_id,
                LedgerMember.user_id == data.user_id,
            )
        )
        if existing:
            existing.role = data.role
            self.session.flush()
            return existing
        member = LedgerMember(
            ledger_id=ctx.ledger_id, user_id=data.user_id, role=data.role
        )
        self.session.add(member)
        self.session.flush()
        return member


class AccountService:
    def __init__(self, session: Session, ctx: AuthContext) -> None:
        self.session = session
        self.ctx = ctx

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.ledger_id == self.ctx.ledger_id, Account.is_active.is_(True))
            .order_by(Account.name)
        )
        return list(self.session.scalars(stmt))

    def create(self, data: AccountIn) -> Account:
        self.ctx.require(write=True)
        account = Account(
            ledger_id=self.ctx.ledger_id,
            name=data.name.strip(),
            currency_code=data.currency_code,
            balance_cents=data.balance_cents,
        )
        self.session.add(account)
        self.session.flush()
        return account


class CategoryService:
    def __init__(self, session: Session, ctx: AuthContext) -> None:
        self.session = session
        self.ctx = ctx

    def list_all(self, include_inactive: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.ledger_id == self.ctx.ledger_id)
            .order_by(Category.sort_order, Category.name, Category.id)
        )
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return list(self.session.scalars(stmt))

    def get(self, category_id: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.ledger_id != self.ctx.ledger_id:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        self.ctx.require(write=True)
        if data.parent_id:
            self.get(data.parent_id)
        existing = self.session.scalar(
            select(Category).where(
                Category.ledger_id == self.ctx.ledger_id,
                Category.parent_id.is_(None)
                if data.parent_id is None
                else Category.parent_id == data.parent_id,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise InvalidInputError("Category with this name already exists")
        category = Category(
            ledger_id=self.ctx.ledger_id,
            parent_id=data.parent_id,
            name=data.name.strip(),
            is_income=data.is_income,
            sort_order=data.sort_order,
        )
        self.session.add(category)
        self.session.flush()
        return category

    def tree(self) -> list[dict[str, Any]]:
        """Nest categories under their parents.

        Categories whose parent is missing or inactive become roots. Each
        node is emitted once, so a bad parent chain cannot loop.
        """
        categories = self.list_all()
        known = {c.id for c in categories}
        children: dict[Optional[str], list[Category]] = {}
        for category in categories:
            parent = category.parent_id if category.parent_id in known else None
            children.setdefault(parent, []).append(category)

        emitted: set[str] = set()

        def build(category: Category) -> dict[str, Any]:
            emitted.add(category.id)
            return {
                "id": category.id,
                "name": category.name,
                "is_income": category.is_income,
                "children": [
                    build(child)
                    for child in children.get(category.id, [])
                    if child.id not in emitted
                ],
            }

        roots = [build(c) for c in children.get(None, []) if c.id not in emitted]
        # Nodes only reachable through a cycle have no root; surface them too.
        for category in categories:
            if category.id not in emitted:
                roots.append(build(category))
        return roots


class MerchantService:
    def __init__(self, session: Session, ctx: AuthContext) -> None:
        self.session = session
        self.ctx = ctx

    def list_all(self) -> list[Merchant]:
        stmt = (
            select(Merchant)
            .where(Merchant.ledger_id == self.ctx.ledger_id)
            .order_by(Merchant.name)
        )
        return list(self.session.scalars(stmt))

    def get(self, merchant_id: str) -> Merchant:
        merchant = self.session.get(Merchant, merchant_id)
        if not merchant or merchant.ledger_id != self.ctx.ledger_id:
            raise NotFoundError("Merchant not found")
        return merchant

    def create(self, data: MerchantIn) -> Merchant:
        self.ctx.require(write=True)
        if data.category_id:
            CategoryService(self.session, self.ctx).get(data.category_id)
        merchant = Merchant(
            ledger_id=self.ctx.ledger_id,
            name=data.name.strip(),
            category_id=data.category_id,
        )
        self.session.add(merchant)
        self.session.flush()
        return merchant


class TransactionService:
    def __init__(
        self,
        session: Session,
        ctx: AuthContext,
        converter: Optional[CurrencyConverter] = None,
    ) -> None:
        self.session = session
        self.ctx = ctx
        self.converter = converter
        self.access = LedgerAccess(session)

    def _converter(self) -> CurrencyConverter:
        if self.converter is None:
            self.converter = CurrencyConverter(self.session)
        return self.converter

    def _check_refs(
        self, category_id: Optional[str], merchant_id: Optional[str]
    ) -> None:
        if category_id:
            CategoryService(self.session, self.ctx).get(category_id)
        if merchant_id:
            MerchantService(self.session, self.ctx).get(merchant_id)

    def _post(self, account: Account, txn: Transaction) -> None:
        converter = (
            self._converter() if txn.currency_code != account.currency_code else None
        )
        post_to_account(account, txn, converter)

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.ledger_id != self.ctx.ledger_id:
            raise NotFoundError("Transaction not found")
        return txn

    def by_external_id(self, external_id: str) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction).where(
                Transaction.ledger_id == self.ctx.ledger_id,
                Transaction.external_id == external_id,
            )
        )

    def list(
        self,
        *,
        account_id: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.ledger_id == self.ctx.ledger_id)
        if account_id:
            stmt = stmt.where(Transaction.account_id == account_id)
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)
        stmt = (
            stmt.order_by(Transaction.date.desc(), Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt))

    def create(self, data: TransactionIn) -> Transaction:
        self.ctx.require(write=True)
        if data.external_id:
            existing = self.by_external_id(data.external_id)
            if existing:
                return existing
        account = self.access.account(self.ctx, data.account_id)
        self._check_refs(data.category_id, data.merchant_id)

        txn = Transaction(
            ledger_id=self.ctx.ledger_id,
            account_id=account.id,
            category_id=data.category_id,
            merchant_id=data.merchant_id,
            type=data.type,
            amount_cents=data.amount_cents,
            currency_code=data.currency_code or account.currency_code,
            date=data.date,
            description=data.description,
            notes=data.notes,
            external_id=data.external_id,
            created_by=self.ctx.user_id,
        )
        self.session.add(txn)
        self._post(account, txn)
        self.session.flush()
        return txn

    def create_transfer(self, data: TransferIn) -> tuple[Transaction, Transaction]:
        """Create both legs of a transfer, linked to each other."""
        self.ctx.require(write=True)
        if data.from_account_id == data.to_account_id:
            raise InvalidInputError("Transfer accounts must differ")
        source = self.access.account(self.ctx, data.from_account_id)
        target = self.access.account(self.ctx, data.to_account_id)

        outgoing_id, incoming_id = new_id(), new_id()
        legs = []
        for txn_id, peer_id, account, direction in (
            (outgoing_id, incoming_id, source, TransferDirection.outgoing),
            (incoming_id, outgoing_id, target, TransferDirection.incoming),
        ):
            leg = Transaction(
                id=txn_id,
                ledger_id=self.ctx.ledger_id,
                account_id=account.id,
                type=TransactionType.transfer,
                amount_cents=data.amount_cents,
                currency_code=source.currency_code,
                date=data.date,
                description=data.description,
                transfer_peer_id=peer_id,
                transfer_direction=direction,
                created_by=self.ctx.user_id,
            )
            self.session.add(leg)
            self._post(account, leg)
            legs.append(leg)
        self.session.flush()
        logger.info(
            f"transfer_created: ledger={self.ctx.ledger_id} from={source.id} "
            f"to={target.id} amount_cents={data.amount_cents}"
        )
        return legs[0], legs[1]

    def create_refund(self, original_id: str, data: RefundIn) -> Transaction:
        self.ctx.require(write=True)
        original = self.get(original_id)
        if original.type != TransactionType.expense:
            raise InvalidInputError("Only expenses can be refunded")
        currency = data.currency_code or original.currency_code
        if currency != original.currency_code:
            raise InvalidInputError("Refund currency must match the original expense")
        refunded = self.session.scalar(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.ledger_id == self.ctx.ledger_id,
                Transaction.refund_of_id == original.id,
            )
        ) or 0
        if refunded + data.amount_cents > original.amount_cents:
            raise InvalidInputError("Refunds exceed the original expense amount")

        account = self.access.account(self.ctx, data.account_id or original.account_id)
        category_id = data.category_id or original.category_id
        self._check_refs(category_id, None)
        refund = Transaction(
            ledger_id=self.ctx.ledger_id,
            account_id=account.id,
            category_id=category_id,
            merchant_id=original.merchant_id,
            type=TransactionType.refund,
            amount_cents=data.amount_cents,
            currency_code=currency,
            date=data.date,
            description=data.description or f"Refund: {original.description or ''}".strip(),
            notes=data.notes,
            refund_of_id=original.id,
            created_by=self.ctx.user_id,
        )
        self.session.add(refund)
        self._post(account, refund)
        self.session.flush()
        return refund


class BudgetService:
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

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.ledger_id == self.ctx.ledger_id, Budget.is_active.is_(True))
            .order_by(Budget.name, Budget.id)
        )
        return list(self.session.scalars(stmt))

    def get(self, budget_id: str) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.ledger_id != self.ctx.ledger_id:
            raise NotFoundError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        self.ctx.require(write=True)
        if data.category_id:
            CategoryService(self.session, self.ctx).get(data.category_id)
        budget = Budget(
            ledger_id=self.ctx.ledger_id,
            category_id=data.category_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
        )
        self.session.add(budget)
        self.session.flush()
        return budget

    def window(self, budget: Budget, *, today: Optional[date] = None) -> Period:
        return budget_window(
            budget.period.value, budget.start_date, budget.end_date, today=today
        )

    def spent(self, budget: Budget, *, today: Optional[date] = None) -> int:
        """Expense total inside the budget window, in the ledger currency."""
        ledger = LedgerAccess(self.session).ledger(self.ctx.ledger_id)
        window = self.window(budget, today=today)
        stmt = select(Transaction.amount_cents, Transaction.currency_code).where(
            Transaction.ledger_id == self.ctx.ledger_id,
            Transaction.type == TransactionType.expense,
            Transaction.date >= window.start,
        )
        if window.end is not None:
            stmt = stmt.where(Transaction.date <= window.end)
        if budget.category_id:
            stmt = stmt.where(Transaction.category_id == budget.category_id)
        rows = self.session.execute(stmt).all()

        items = [(row.amount_cents, row.currency_code) for row in rows]
        if all(code == ledger.currency_code for _, code in items):
            return sum(amount for amount, _ in items)
        return sum(self._converter().batch_convert(items, ledger.currency_code))

    def progress(self, budget: Budget, *, today: Optional[date] = None) -> dict[str, Any]:
        ledger = LedgerAccess(self.session).ledger(self.ctx.ledger_id)
        window = self.window(budget, today=today)
        spent = self.spent(budget, today=today)
        percent_used = (
            round(spent / budget.amount_cents * 100, 1) if budget.amount_cents else 0.0
        )
        return {
            "budget_id": budget.id,
            "currency_code": ledger.currency_code,
            "amount_cents": budget.amount_cents,
            "spent_cents": spent,
            "remaining_cents": budget.amount_cents - spent,
            "percent_used": percent_used,
            "window_start": window.start,
            "window_end": window.end,
        }


class RuleService:
    def __init__(self, session: Session, ctx: AuthContext) -> None:
        self.session = session
        self.ctx = ctx

    def list_all(self) -> list[ClassificationRule]:
        stmt = (
            select(ClassificationRule)
            .where(ClassificationRule.ledger_id == self.ctx.ledger_id)
            .order_by(
                ClassificationRule.priority.desc(),
                ClassificationRule.created_at.asc(),
                ClassificationRule.id.asc(),
            )
        )
        return list(self.session.scalars(stmt))

    def create(self, data: RuleIn) -> ClassificationRule:
        self.ctx.require(write=True)
        if data.category_id:
            CategoryService(self.session, self.ctx).get(data.category_id)
        if data.merchant_id:
            MerchantService(self.session, self.ctx).get(data.merchant_id)
        rule = ClassificationRule(
            ledger_id=self.ctx.ledger_id,
            match_field=data.match_field,
            match_pattern=data.match_pattern.strip(),
            category_id=data.category_id,
            merchant_id=data.merchant_id,
            priority=data.priority,
            is_active=data.is_active,
        )
        self.session.add(rule)
        self.session.flush()
        record_audit(
            self.session,
            ledger_id=self.ctx.ledger_id,
            table_name="classification_rules",
            record_id=rule.id,
            action="INSERT",
            actor_id=self.ctx.user_id,
            after_data={"match_pattern": rule.match_pattern, "priority": rule.priority},
        )
        return rule


class SubscriptionService:
    def __init__(self, session: Session, ctx: AuthContext) -> None:
        self.session = session
        self.ctx = ctx

    def list_all(self) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.ledger_id == self.ctx.ledger_id)
            .order_by(Subscription.next_due_date, Subscription.name)
        )
        return list(self.session.scalars(stmt))

    def create(self, data: SubscriptionIn) -> Subscription:
        self.ctx.require(write=True)
        account = LedgerAccess(self.session).account(self.ctx, data.account_id)
        if data.category_id:
            CategoryService(self.session, self.ctx).get(data.category_id)
        if data.merchant_id:
            MerchantService(self.session, self.ctx).get(data.merchant_id)
        sub = Subscription(
            ledger_id=self.ctx.ledger_id,
            account_id=account.id,
            category_id=data.category_id,
            merchant_id=data.merchant_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            currency_code=data.currency_code or account.currency_code,
            interval=data.interval,
            next_due_date=data.next_due_date,
            anchor_date=data.anchor_date or data.next_due_date,
            notes=data.notes,
        )
        self.session.add(sub)
        self.session.flush()
        return sub


class ExchangeRateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def latest(self, base: str, limit: int = 30) -> list[ExchangeRate]:
        stmt = (
            select(ExchangeRate)
            .where(ExchangeRate.base_currency == normalize_currency(base))
            .order_by(ExchangeRate.rate_date.desc(), ExchangeRate.quote_currency)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))
