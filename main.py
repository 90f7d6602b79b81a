import logging
from datetime import date
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from access import AuthContext, LedgerAccess
from classification import ClassificationEngine
from config import get_settings
from database import SessionLocal
from errors import ForbiddenError, InvalidInputError, NotFoundError
from fx_rates import CurrencyConverter, RateCache
from insights import InsightEngine
from reconciliation import ReconciliationEngine
from recurrence import SubscriptionEngine
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AggregateIn,
    BatchConvertIn,
    BudgetIn,
    BudgetProgressOut,
    CategoryIn,
    ConvertIn,
    InsightOut,
    InsightsIn,
    LedgerIn,
    MarkReadIn,
    MemberIn,
    MerchantIn,
    MonthlySummaryOut,
    ReconcileIn,
    RefundIn,
    RuleIn,
    RuleRunIn,
    SnapshotOut,
    SubscriptionIn,
    SubscriptionRunIn,
    TransactionIn,
    TransactionOut,
    TransferIn,
    TransferOut,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ExchangeRateService,
    LedgerService,
    MerchantService,
    RuleService,
    SubscriptionService,
    TransactionService,
)
from summaries import MonthlyAggregationEngine


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger Engine")
app.state.rate_cache = RateCache()
# Replaced in tests with a fake rate source.
app.state.fx_source = None

scheduler_manager = SchedulerManager(cache=app.state.rate_cache)


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    app.state.rate_cache.clear()


@app.exception_handler(NotFoundError)
def not_found_handler(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ForbiddenError)
def forbidden_handler(_request: Request, exc: ForbiddenError) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InvalidInputError)
def invalid_input_handler(_request: Request, exc: InvalidInputError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def ledger_context(
    ledger_id: str,
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> AuthContext:
    return LedgerAccess(db).authorize(ledger_id, x_user_id)


def get_converter(request: Request, db: Session = Depends(get_db)) -> CurrencyConverter:
    return CurrencyConverter(
        db, cache=request.app.state.rate_cache, source=request.app.state.fx_source
    )


def require_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> None:
    secret = get_settings().cron_secret
    if secret and x_cron_secret != secret:
        raise HTTPException(status_code=401, detail="Invalid cron secret")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/ledgers", status_code=201)
def create_ledger(
    payload: LedgerIn,
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    if not x_user_id:
        raise ForbiddenError("Missing caller identity")
    ledger = LedgerService(db).create(payload, x_user_id)
    return {"id": ledger.id, "name": ledger.name, "currency_code": ledger.currency_code}


@app.post("/api/ledgers/{ledger_id}/members", status_code=201)
def add_member(
    payload: MemberIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    member = LedgerService(db).add_member(ctx, payload)
    return {"user_id": member.user_id, "role": member.role.value}


@app.get("/api/ledgers/{ledger_id}/accounts")
def list_accounts(ctx: AuthContext = Depends(ledger_context), db: Session = Depends(get_db)):
    return [
        {
            "id": a.id,
            "name": a.name,
            "currency_code": a.currency_code,
            "balance_cents": a.balance_cents,
        }
        for a in AccountService(db, ctx).list_all()
    ]


@app.post("/api/ledgers/{ledger_id}/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    account = AccountService(db, ctx).create(payload)
    return {"id": account.id, "name": account.name, "currency_code": account.currency_code}


@app.post("/api/ledgers/{ledger_id}/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, ctx).create(payload)
    return {"id": category.id, "name": category.name, "parent_id": category.parent_id}


@app.get("/api/ledgers/{ledger_id}/categories/tree")
def category_tree(ctx: AuthContext = Depends(ledger_context), db: Session = Depends(get_db)):
    return CategoryService(db, ctx).tree()


@app.post("/api/ledgers/{ledger_id}/merchants", status_code=201)
def create_merchant(
    payload: MerchantIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    merchant = MerchantService(db, ctx).create(payload)
    return {"id": merchant.id, "name": merchant.name}


@app.get("/api/ledgers/{ledger_id}/transactions", response_model=list[TransactionOut])
def list_transactions(
    account_id: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = 200,
    offset: int = 0,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    return TransactionService(db, ctx).list(
        account_id=account_id,
        start=start,
        end=end,
        limit=min(max(limit, 1), 1000),
        offset=max(offset, 0),
    )


@app.post(
    "/api/ledgers/{ledger_id}/transactions",
    response_model=TransactionOut,
    status_code=201,
)
def create_transaction(
    payload: TransactionIn,
    ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
    db: Session = Depends(get_db),
):
    return TransactionService(db, ctx, converter).create(payload)


@app.post(
    "/api/ledgers/{ledger_id}/transfers", response_model=TransferOut, status_code=201
)
def create_transfer(
    payload: TransferIn,
    ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
    db: Session = Depends(get_db),
):
    outgoing, incoming = TransactionService(db, ctx, converter).create_transfer(payload)
    return {
        "outgoing": TransactionOut.model_validate(outgoing),
        "incoming": TransactionOut.model_validate(incoming),
    }


@app.post(
    "/api/ledgers/{ledger_id}/transactions/{transaction_id}/refunds",
    response_model=TransactionOut,
    status_code=201,
)
def create_refund(
    transaction_id: str,
    payload: RefundIn,
    ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
    db: Session = Depends(get_db),
):
    return TransactionService(db, ctx, converter).create_refund(transaction_id, payload)


@app.post("/api/ledgers/{ledger_id}/fx/convert")
def convert(
    payload: ConvertIn,
    on_date: Optional[date] = None,
    _ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
):
    rate = converter.rate(payload.from_currency, payload.to_currency, on_date)
    return {
        "amount_cents": converter.convert(
            payload.amount_cents, payload.from_currency, payload.to_currency, on_date
        ),
        "rate": str(rate),
        "from_currency": payload.from_currency,
        "to_currency": payload.to_currency,
    }


@app.post("/api/ledgers/{ledger_id}/fx/batch-convert")
def batch_convert(
    payload: BatchConvertIn,
    _ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
):
    items = [(item.amount_cents, item.currency_code) for item in payload.items]
    return {
        "target_currency": payload.target_currency,
        "amounts_cents": converter.batch_convert(items, payload.target_currency),
    }


@app.get("/api/fx/rates")
def list_rates(base: str, limit: int = 30, db: Session = Depends(get_db)):
    return [
        {
            "base_currency": r.base_currency,
            "quote_currency": r.quote_currency,
            "rate_date": r.rate_date,
            "rate": str(r.rate),
            "source": r.source,
        }
        for r in ExchangeRateService(db).latest(base, min(max(limit, 1), 500))
    ]


@app.get("/api/ledgers/{ledger_id}/rules")
def list_rules(ctx: AuthContext = Depends(ledger_context), db: Session = Depends(get_db)):
    return [
        {
            "id": r.id,
            "match_field": r.match_field.value,
            "match_pattern": r.match_pattern,
            "category_id": r.category_id,
            "merchant_id": r.merchant_id,
            "priority": r.priority,
            "is_active": r.is_active,
        }
        for r in RuleService(db, ctx).list_all()
    ]


@app.post("/api/ledgers/{ledger_id}/rules", status_code=201)
def create_rule(
    payload: RuleIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    rule = RuleService(db, ctx).create(payload)
    return {"id": rule.id, "match_pattern": rule.match_pattern, "priority": rule.priority}


@app.post("/api/ledgers/{ledger_id}/rules/run")
def run_rules(
    payload: RuleRunIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    result = ClassificationEngine(db, ctx).evaluate(payload.mode, payload.lookback_days)
    return result.as_dict()


@app.post("/api/ledgers/{ledger_id}/accounts/{account_id}/reconcile")
def reconcile_account(
    account_id: str,
    payload: ReconcileIn,
    ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
    db: Session = Depends(get_db),
):
    result = ReconciliationEngine(db, ctx, converter).reconcile(
        account_id, payload.snapshot_date, payload.statement_balance_cents
    )
    return result.as_dict()


@app.get(
    "/api/ledgers/{ledger_id}/accounts/{account_id}/reconciliations",
    response_model=list[SnapshotOut],
)
def reconciliation_history(
    account_id: str,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    return ReconciliationEngine(db, ctx).history(account_id)


@app.post("/api/ledgers/{ledger_id}/summaries/aggregate")
def aggregate_summaries(
    payload: AggregateIn,
    ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
    db: Session = Depends(get_db),
):
    results = MonthlyAggregationEngine(db, ctx, converter).aggregate(
        payload.month, payload.backfill_months
    )
    return {"summaries": [r.as_dict() for r in results]}


@app.get(
    "/api/ledgers/{ledger_id}/summaries", response_model=list[MonthlySummaryOut]
)
def list_summaries(
    limit: int = 12,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    return MonthlyAggregationEngine(db, ctx).list_summaries(min(max(limit, 1), 120))


@app.get("/api/ledgers/{ledger_id}/budgets")
def list_budgets(ctx: AuthContext = Depends(ledger_context), db: Session = Depends(get_db)):
    return [
        {
            "id": b.id,
            "name": b.name,
            "category_id": b.category_id,
            "amount_cents": b.amount_cents,
            "period": b.period.value,
        }
        for b in BudgetService(db, ctx).list_all()
    ]


@app.post("/api/ledgers/{ledger_id}/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, ctx).create(payload)
    return {"id": budget.id, "name": budget.name}


@app.get(
    "/api/ledgers/{ledger_id}/budgets/{budget_id}/spent",
    response_model=BudgetProgressOut,
)
def budget_spent(
    budget_id: str,
    ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
    db: Session = Depends(get_db),
):
    service = BudgetService(db, ctx, converter)
    return service.progress(service.get(budget_id))


@app.post("/api/ledgers/{ledger_id}/insights/generate", response_model=list[InsightOut])
def generate_insights(
    payload: InsightsIn,
    ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
    db: Session = Depends(get_db),
):
    return InsightEngine(db, ctx, converter).generate(payload.month)


@app.get("/api/ledgers/{ledger_id}/insights", response_model=list[InsightOut])
def list_insights(
    unread: bool = False,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    return InsightEngine(db, ctx).list_insights(only_unread=unread)


@app.post("/api/ledgers/{ledger_id}/insights/read")
def mark_insights_read(
    payload: MarkReadIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    return {"updated": InsightEngine(db, ctx).mark_read(payload.ids)}


@app.get("/api/ledgers/{ledger_id}/subscriptions")
def list_subscriptions(
    ctx: AuthContext = Depends(ledger_context), db: Session = Depends(get_db)
):
    return [
        {
            "id": s.id,
            "name": s.name,
            "amount_cents": s.amount_cents,
            "currency_code": s.currency_code,
            "interval": s.interval.value,
            "next_due_date": s.next_due_date,
            "is_active": s.is_active,
        }
        for s in SubscriptionService(db, ctx).list_all()
    ]


@app.post("/api/ledgers/{ledger_id}/subscriptions", status_code=201)
def create_subscription(
    payload: SubscriptionIn,
    ctx: AuthContext = Depends(ledger_context),
    db: Session = Depends(get_db),
):
    sub = SubscriptionService(db, ctx).create(payload)
    return {"id": sub.id, "name": sub.name, "next_due_date": sub.next_due_date}


@app.post("/api/ledgers/{ledger_id}/subscriptions/generate")
def generate_subscription_instances(
    payload: SubscriptionRunIn,
    ctx: AuthContext = Depends(ledger_context),
    converter: CurrencyConverter = Depends(get_converter),
    db: Session = Depends(get_db),
):
    result = SubscriptionEngine(db, ctx, converter).generate(payload.horizon_days)
    return result.as_dict()


@app.post("/api/cron/daily", dependencies=[Depends(require_cron_secret)])
def cron_daily():
    return scheduler_manager.run_daily_jobs("http")


@app.post("/api/cron/monthly", dependencies=[Depends(require_cron_secret)])
def cron_monthly():
    return scheduler_manager.run_monthly_jobs("http")
