from __future__ import annotations

import json
import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Callable, Optional, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import InvalidInputError, UpstreamUnavailable
from models import ExchangeRate
from periods import local_today


logger = logging.getLogger(__name__)

PROVIDER = "fawazahmed0/currency-api"
IDENTITY = Decimal("1")

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def normalize_currency(code: str) -> str:
    clean = (code or "").strip().upper()
    if not _CURRENCY_RE.match(clean):
        raise InvalidInputError(f"Invalid currency code {code!r}")
    return clean


def quantize_cents(value: Decimal) -> int:
    """Single rounding rule for every converted amount."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


class RateCache:
    """In-process rate cache with a bounded TTL.

    One instance is created per process (see ``main.py``) and passed to
    every ``CurrencyConverter``; tests build their own with a fake clock.
    """

    def __init__(
        self,
        ttl_secs: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_secs is None:
            ttl_secs = get_settings().fx_cache_ttl_secs
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._entries: dict[tuple[str, str, date], tuple[Decimal, float]] = {}
        self._lock = threading.Lock()

    def get(self, base: str, quote: str, rate_date: date) -> Optional[Decimal]:
        key = (base, quote, rate_date)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            rate, stored_at = entry
            if self._clock() - stored_at >= self.ttl_secs:
                del self._entries[key]
                return None
            return rate

    def put(self, base: str, quote: str, rate_date: date, rate: Decimal) -> None:
        with self._lock:
            self._entries[(base, quote, rate_date)] = (rate, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FxRateService:
    """External rate source: one per-base rate table per request."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _url(self, base: str, on_date: date, today: date) -> str:
        version = "latest" if on_date >= today else on_date.isoformat()
        return (
            f"{self.settings.fx_base_url}@{version}"
            f"/v1/currencies/{base.lower()}.json"
        )

    def fetch_rates(
        self, base: str, on_date: date, *, today: Optional[date] = None
    ) -> dict[str, Decimal]:
        url = self._url(base, on_date, today or local_today())
        req = Request(url, headers={"Accept": "application/json"})
        try:
            with urlopen(req, timeout=self.settings.fx_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
            raise UpstreamUnavailable(f"Failed to fetch FX rates for {base}") from exc

        table = payload.get(base.lower()) if isinstance(payload, dict) else None
        if not isinstance(table, dict):
            raise UpstreamUnavailable("Unexpected FX provider response")

        rates: dict[str, Decimal] = {}
        for code, value in table.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            try:
                rate = Decimal(str(value))
            except InvalidOperation:
                continue
            if rate > 0:
                rates[code.upper()] = rate
        return rates

    def quote(
        self, base: str, quote: str, on_date: date, *, today: Optional[date] = None
    ) -> FxQuote:
        fetched_at = datetime.now(timezone.utc)
        rates = self.fetch_rates(base, on_date, today=today)
        rate = rates.get(quote)
        if rate is None:
            raise UpstreamUnavailable(f"No rate found for {base}->{quote}")
        return FxQuote(
            provider=PROVIDER,
            base=base,
            quote=quote,
            rate=rate,
            rate_date=on_date,
            fetched_at=fetched_at,
        )


class CurrencyConverter:
    """Converts integer cent amounts between currencies.

    Lookup order for a pair: the injected ``RateCache``, the persisted
    daily rate for the requested day, the external source (persisted back
    on success), the most recent persisted rate of any age, and finally
    the identity rate. Conversion never raises for a missing rate.
    """

    def __init__(
        self,
        session: Session,
        *,
        cache: Optional[RateCache] = None,
        source: Optional[FxRateService] = None,
        today: Optional[date] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.session = session
        self.cache = cache if cache is not None else RateCache()
        self.source = source if source is not None else FxRateService()
        self.today = today or local_today()
        self.max_workers = max_workers or get_settings().fx_max_workers

    def rate(self, from_ccy: str, to_ccy: str, on_date: Optional[date] = None) -> Decimal:
        base = normalize_currency(from_ccy)
        quote = normalize_currency(to_ccy)
        if base == quote:
            return IDENTITY
        day = on_date or self.today

        local = self._lookup_local(base, quote, day)
        if local is not None:
            return local
        try:
            fetched = self.source.quote(base, quote, day, today=self.today)
        except UpstreamUnavailable as exc:
            return self._fallback(base, quote, day, exc)
        return self._remember(fetched)

    def convert(
        self,
        amount_cents: int,
        from_ccy: str,
        to_ccy: str,
        on_date: Optional[date] = None,
    ) -> int:
        if normalize_currency(from_ccy) == normalize_currency(to_ccy):
            return amount_cents
        return quantize_cents(Decimal(amount_cents) * self.rate(from_ccy, to_ccy, on_date))

    def batch_convert(
        self,
        items: Sequence[tuple[int, str]],
        target: str,
        on_date: Optional[date] = None,
    ) -> list[int]:
        rates = self.rates_to(target, [currency for _, currency in items], on_date)
        converted: list[int] = []
        for amount_cents, currency in items:
            rate = rates[normalize_currency(currency)]
            if rate == IDENTITY:
                converted.append(amount_cents)
            else:
                converted.append(quantize_cents(Decimal(amount_cents) * rate))
        return converted

    def rates_to(
        self,
        target: str,
        currencies: Sequence[str],
        on_date: Optional[date] = None,
    ) -> dict[str, Decimal]:
        """Resolve one rate per distinct currency into ``target``."""
        quote = normalize_currency(target)
        day = on_date or self.today
        rates: dict[str, Decimal] = {quote: IDENTITY}
        pending: list[str] = []
        for currency in dict.fromkeys(normalize_currency(c) for c in currencies):
            if currency in rates:
                continue
            local = self._lookup_local(currency, quote, day)
            if local is not None:
                rates[currency] = local
            else:
                pending.append(currency)

        if not pending:
            return rates

        def fetch(base: str) -> FxQuote | UpstreamUnavailable:
            try:
                return self.source.quote(base, quote, day, today=self.today)
            except UpstreamUnavailable as exc:
                return exc

        workers = min(self.max_workers, len(pending))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(fetch, pending))

        # Session work stays on the calling thread.
        for base, result in zip(pending, results):
            if isinstance(result, FxQuote):
                rates[base] = self._remember(result)
            else:
                rates[base] = self._fallback(base, quote, day, result)
        return rates

    def _lookup_local(self, base: str, quote: str, day: date) -> Optional[Decimal]:
        cached = self.cache.get(base, quote, day)
        if cached is not None:
            return cached
        stored = self.session.scalar(
            select(ExchangeRate.rate).where(
                ExchangeRate.base_currency == base,
                ExchangeRate.quote_currency == quote,
                ExchangeRate.rate_date == day,
            )
        )
        if stored is None:
            return None
        rate = Decimal(stored)
        self.cache.put(base, quote, day, rate)
        return rate

    def _remember(self, fetched: FxQuote) -> Decimal:
        self.cache.put(fetched.base, fetched.quote, fetched.rate_date, fetched.rate)
        self._persist(fetched)
        return fetched.rate

    def _persist(self, fetched: FxQuote) -> None:
        try:
            with self.session.begin_nested():
                row = self.session.scalar(
                    select(ExchangeRate).where(
                        ExchangeRate.base_currency == fetched.base,
                        ExchangeRate.quote_currency == fetched.quote,
                        ExchangeRate.rate_date == fetched.rate_date,
                    )
                )
                if row is None:
                    row = ExchangeRate(
                        base_currency=fetched.base,
                        quote_currency=fetched.quote,
                        rate_date=fetched.rate_date,
                    )
                    self.session.add(row)
                row.rate = fetched.rate
                row.source = fetched.provider
                row.fetched_at = fetched.fetched_at.replace(tzinfo=None)
        except SQLAlchemyError:
            logger.warning(
                f"fx_persist_failed: base={fetched.base} quote={fetched.quote} "
                f"date={fetched.rate_date}",
                exc_info=True,
            )

    def _fallback(
        self, base: str, quote: str, day: date, error: Exception
    ) -> Decimal:
        logger.warning(f"fx_fetch_failed: base={base} quote={quote} error={error}")
        latest = self.session.scalar(
            select(ExchangeRate.rate)
            .where(
                ExchangeRate.base_currency == base,
                ExchangeRate.quote_currency == quote,
            )
            .order_by(ExchangeRate.rate_date.desc())
            .limit(1)
        )
        if latest is not None:
            rate = Decimal(latest)
            self.cache.put(base, quote, day, rate)
            return rate
        logger.warning(f"fx_identity_fallback: base={base} quote={quote}")
        return IDENTITY
