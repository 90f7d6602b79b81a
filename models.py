import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"
    refund = "refund"
    adjustment = "adjustment"


class TransferDirection(str, Enum):
    outgoing = "outgoing"
    incoming = "incoming"


class LedgerRole(str, Enum):
    owner = "owner"
    admin = "admin"
    editor = "editor"
    viewer = "viewer"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class SubscriptionInterval(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class RuleMatchField(str, Enum):
    description = "description"
    notes = "notes"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Ledger(Base, TimestampMixin):
    __tablename__ = "ledgers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    members: Mapped[list["LedgerMember"]] = relationship(
        "LedgerMember", back_populates="ledger"
    )
    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="ledger"
    )


class LedgerMember(Base, TimestampMixin):
    __tablename__ = "ledger_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[LedgerRole] = mapped_column(SAEnum(LedgerRole), nullable=False)

    ledger: Mapped["Ledger"] = relationship("Ledger", back_populates="members")

    __table_args__ = (
        UniqueConstraint("ledger_id", "user_id", name="uq_ledger_member_user"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    # Cached projection; the transaction history is authoritative.
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    ledger: Mapped["Ledger"] = relationship("Ledger", back_populates="accounts")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_income: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (Index("ix_categories_ledger_parent", "ledger_id", "parent_id"),)


class Merchant(Base, TimestampMixin):
    __tablename__ = "merchants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    merchant_id: Mapped[Optional[str]] = mapped_column(ForeignKey("merchants.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    external_id: Mapped[Optional[str]] = mapped_column(String(120))
    transfer_peer_id: Mapped[Optional[str]] = mapped_column(String(36))
    transfer_direction: Mapped[Optional[TransferDirection]] = mapped_column(
        SAEnum(TransferDirection)
    )
    refund_of_id: Mapped[Optional[str]] = mapped_column(ForeignKey("transactions.id"))
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("ledger_id", "external_id", name="uq_txn_ledger_external_id"),
        Index("ix_transactions_ledger_date", "ledger_id", "date"),
        Index("ix_transactions_ledger_type_date", "ledger_id", "type", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        CheckConstraint(
            "amount_cents >= 0 OR type = 'adjustment'",
            name="amount_non_negative",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[BudgetPeriod] = mapped_column(SAEnum(BudgetPeriod), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="budget_amount_non_negative"),
    )


class ClassificationRule(Base, TimestampMixin):
    __tablename__ = "classification_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    match_field: Mapped[RuleMatchField] = mapped_column(
        SAEnum(RuleMatchField), nullable=False, default=RuleMatchField.description
    )
    match_pattern: Mapped[str] = mapped_column(String(200), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    merchant_id: Mapped[Optional[str]] = mapped_column(ForeignKey("merchants.id"))
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_rules_ledger_active_priority", "ledger_id", "is_active", "priority"),
    )


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    merchant_id: Mapped[Optional[str]] = mapped_column(ForeignKey("merchants.id"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    interval: Mapped[SubscriptionInterval] = mapped_column(
        SAEnum(SubscriptionInterval), nullable=False
    )
    next_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    anchor_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="subscription_amount_non_negative"),
    )


class MonthlySummary(Base, TimestampMixin):
    __tablename__ = "monthly_summaries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    total_income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_expense_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_transfers_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_refunds_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_savings_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("ledger_id", "year_month", name="uq_summary_ledger_month"),
    )


class ReconciliationSnapshot(Base):
    __tablename__ = "reconciliation_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    statement_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    difference_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    transactions_checked: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    reconciled_by: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_snapshots_account_date", "account_id", "snapshot_date"),
    )


class Insight(Base):
    __tablename__ = "insights"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[Optional[str]] = mapped_column(Text)
    insight_type: Mapped[str] = mapped_column(String(40), nullable=False)
    source_month: Mapped[str] = mapped_column(String(7), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_insights_ledger_month", "ledger_id", "source_month"),)


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    quote_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(80))
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "base_currency", "quote_currency", "rate_date", name="uq_rate_pair_day"
        ),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ledger_id: Mapped[str] = mapped_column(ForeignKey("ledgers.id"), nullable=False)
    table_name: Mapped[str] = mapped_column(String(60), nullable=False)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    before_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    after_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_audit_ledger_created", "ledger_id", "created_at"),)
