from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import (
    BudgetPeriod,
    LedgerRole,
    RuleMatchField,
    SubscriptionInterval,
    TransactionType,
    TransferDirection,
)


def _upper_currency(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    clean = value.strip().upper()
    if len(clean) != 3 or not clean.isalpha():
        raise ValueError("currency code must be three letters")
    return clean


class LedgerIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    currency_code: str = "USD"

    @field_validator("currency_code")
    @classmethod
    def normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper_currency(value)


class MemberIn(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    role: LedgerRole


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    currency_code: str = "USD"
    balance_cents: int = 0

    @field_validator("currency_code")
    @classmethod
    def normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper_currency(value)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[str] = None
    is_income: bool = False
    sort_order: int = 0


class MerchantIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: Optional[str] = None


class TransactionIn(BaseModel):
    account_id: str
    type: TransactionType
    amount_cents: int
    date: date
    currency_code: Optional[str] = None
    category_id: Optional[str] = None
    merchant_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None
    external_id: Optional[str] = Field(default=None, max_length=120)

    @field_validator("currency_code")
    @classmethod
    def normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper_currency(value)

    @model_validator(mode="after")
    def check_amount(self) -> "TransactionIn":
        if self.type == TransactionType.transfer:
            raise ValueError("transfers are created through the transfer endpoint")
        if self.type == TransactionType.refund:
            raise ValueError("refunds are created through the refund endpoint")
        if self.amount_cents < 0 and self.type != TransactionType.adjustment:
            raise ValueError("amount must not be negative")
        return self


class TransferIn(BaseModel):
    from_account_id: str
    to_account_id: str
    amount_cents: int = Field(..., gt=0)
    date: date
    description: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def distinct_accounts(self) -> "TransferIn":
        if self.from_account_id == self.to_account_id:
            raise ValueError("transfer accounts must differ")
        return self


class RefundIn(BaseModel):
    account_id: Optional[str] = None
    amount_cents: int = Field(..., gt=0)
    date: date
    currency_code: Optional[str] = None
    category_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None

    @field_validator("currency_code")
    @classmethod
    def normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper_currency(value)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ledger_id: str
    account_id: str
    category_id: Optional[str]
    merchant_id: Optional[str]
    type: TransactionType
    amount_cents: int
    currency_code: str
    date: date
    description: Optional[str]
    notes: Optional[str]
    external_id: Optional[str]
    transfer_peer_id: Optional[str]
    transfer_direction: Optional[TransferDirection]
    refund_of_id: Optional[str]
    is_reconciled: bool


class TransferOut(BaseModel):
    outgoing: TransactionOut
    incoming: TransactionOut


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: Optional[str] = None
    amount_cents: int = Field(..., ge=0)
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def check_window(self) -> "BudgetIn":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class BudgetProgressOut(BaseModel):
    budget_id: str
    currency_code: str
    amount_cents: int
    spent_cents: int
    remaining_cents: int
    percent_used: float
    window_start: date
    window_end: Optional[date]


class RuleIn(BaseModel):
    match_field: RuleMatchField = RuleMatchField.description
    match_pattern: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[str] = None
    merchant_id: Optional[str] = None
    priority: int = Field(default=0, ge=0, le=10_000)
    is_active: bool = True

    @model_validator(mode="after")
    def has_target(self) -> "RuleIn":
        if not self.category_id and not self.merchant_id:
            raise ValueError("rule must set a category or a merchant")
        return self


class RuleRunIn(BaseModel):
    mode: Literal["test", "apply"]
    lookback_days: int = Field(default=30, ge=0, le=3650)


class SubscriptionIn(BaseModel):
    account_id: str
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    currency_code: Optional[str] = None
    interval: SubscriptionInterval
    next_due_date: date
    anchor_date: Optional[date] = None
    category_id: Optional[str] = None
    merchant_id: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("currency_code")
    @classmethod
    def normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper_currency(value)


class ConvertIn(BaseModel):
    amount_cents: int
    from_currency: str
    to_currency: str

    @field_validator("from_currency", "to_currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return _upper_currency(value)


class BatchItemIn(BaseModel):
    amount_cents: int
    currency_code: str

    @field_validator("currency_code")
    @classmethod
    def normalize_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper_currency(value)


class BatchConvertIn(BaseModel):
    items: list[BatchItemIn]
    target_currency: str

    @field_validator("target_currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return _upper_currency(value)


class ReconcileIn(BaseModel):
    snapshot_date: date
    statement_balance_cents: int


class AggregateIn(BaseModel):
    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    backfill_months: int = Field(default=0, ge=0, le=120)


class InsightsIn(BaseModel):
    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")


class SubscriptionRunIn(BaseModel):
    horizon_days: int = Field(default=45, ge=0, le=3650)


class MarkReadIn(BaseModel):
    ids: list[str] = Field(default_factory=list)


class InsightOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    body: Optional[str]
    insight_type: str
    source_month: str
    data: dict[str, Any]
    is_read: bool
    created_at: datetime


class SnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    snapshot_date: date
    statement_balance_cents: int
    computed_balance_cents: int
    difference_cents: int
    is_reconciled: bool
    transactions_checked: int
    notes: Optional[str]
    created_at: datetime


class MonthlySummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year_month: str
    currency_code: str
    total_income_cents: int
    total_expense_cents: int
    total_transfers_cents: int
    total_refunds_cents: int
    net_savings_cents: int
    transaction_count: int
    computed_at: Optional[datetime]
