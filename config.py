import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        fx_base_url: str,
        fx_timeout_secs: float,
        fx_cache_ttl_secs: float,
        fx_max_workers: int,
        cron_secret: Optional[str],
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.fx_base_url = fx_base_url
        self.fx_timeout_secs = fx_timeout_secs
        self.fx_cache_ttl_secs = fx_cache_ttl_secs
        self.fx_max_workers = fx_max_workers
        self.cron_secret = cron_secret
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    fx_base_url = os.getenv(
        "LEDGER_FX_BASE_URL",
        "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api",
    )
    fx_timeout_secs = float(os.getenv("LEDGER_FX_TIMEOUT_SECS", "5"))
    fx_cache_ttl_secs = float(os.getenv("LEDGER_FX_CACHE_TTL_SECS", "3600"))
    fx_max_workers = int(os.getenv("LEDGER_FX_MAX_WORKERS", "4"))
    cron_secret = os.getenv("LEDGER_CRON_SECRET") or None
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", True)
    return Settings(
        database_url=database_url,
        timezone=timezone,
        fx_base_url=fx_base_url.rstrip("/"),
        fx_timeout_secs=fx_timeout_secs,
        fx_cache_ttl_secs=fx_cache_ttl_secs,
        fx_max_workers=max(1, fx_max_workers),
        cron_secret=cron_secret,
        scheduler_enabled=scheduler_enabled,
    )
