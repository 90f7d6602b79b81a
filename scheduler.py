import logging
from datetime import date
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session

from access import AuthContext
from config import get_settings
from database import session_scope
from fx_rates import CurrencyConverter, RateCache
from insights import InsightEngine
from models import Ledger
from periods import local_today, shift_year_month, year_month_of
from recurrence import SubscriptionEngine
from summaries import MonthlyAggregationEngine


logger = logging.getLogger(__name__)


def active_ledger_ids() -> list[str]:
    with session_scope() as session:
        return list(
            session.scalars(
                select(Ledger.id).where(Ledger.is_active.is_(True)).order_by(Ledger.id)
            )
        )


def run_daily(session: Session, ledger_id: str, cache: RateCache, today: date) -> None:
    ctx = AuthContext.system(ledger_id)
    converter = CurrencyConverter(session, cache=cache, today=today)
    SubscriptionEngine(session, ctx, converter).generate(today=today)
    MonthlyAggregationEngine(session, ctx, converter).aggregate(
        year_month_of(today), backfill_months=1
    )


def run_monthly(session: Session, ledger_id: str, cache: RateCache, today: date) -> None:
    ctx = AuthContext.system(ledger_id)
    converter = CurrencyConverter(session, cache=cache, today=today)
    InsightEngine(session, ctx, converter).generate(
        shift_year_month(year_month_of(today), -1)
    )


class SchedulerManager:
    def __init__(self, cache: Optional[RateCache] = None) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.cache = cache if cache is not None else RateCache()

    def _for_each_ledger(
        self,
        job: Callable[[Session, str, RateCache, date], None],
        source: str,
    ) -> dict[str, int]:
        today = local_today()
        ok = failed = 0
        for ledger_id in active_ledger_ids():
            try:
                with session_scope() as session:
                    job(session, ledger_id, self.cache, today)
            except Exception:
                failed += 1
                logger.exception(
                    f"scheduler_ledger_failed: source={source} ledger={ledger_id}"
                )
                continue
            ok += 1
        logger.info(f"scheduler_run: source={source} ledgers={ok} failed={failed}")
        return {"ledgers": ok, "failed": failed}

    def run_daily_jobs(self, source: str = "manual") -> dict[str, int]:
        return self._for_each_ledger(run_daily, source)

    def run_monthly_jobs(self, source: str = "manual") -> dict[str, int]:
        return self._for_each_ledger(run_monthly, source)

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_daily_jobs,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="ledger_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_monthly_jobs,
            CronTrigger(day=1, hour=4, minute=0),
            args=["monthly_day1_04:00"],
            id="ledger_monthly",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and monthly day-1 04:00 jobs")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
