import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        bulk_batch_size: int,
        max_bill_redirects: int,
        reconcile_hour: int,
        reconcile_minute: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.bulk_batch_size = bulk_batch_size
        self.max_bill_redirects = max_bill_redirects
        self.reconcile_hour = reconcile_hour
        self.reconcile_minute = reconcile_minute
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "ledger.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    bulk_batch_size = max(1, int(os.getenv("LEDGER_BULK_BATCH_SIZE", "5")))
    max_bill_redirects = max(1, int(os.getenv("LEDGER_MAX_BILL_REDIRECTS", "12")))
    reconcile_hour = int(os.getenv("LEDGER_RECONCILE_HOUR", "3"))
    reconcile_minute = int(os.getenv("LEDGER_RECONCILE_MINUTE", "15"))
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        bulk_batch_size=bulk_batch_size,
        max_bill_redirects=max_bill_redirects,
        reconcile_hour=reconcile_hour,
        reconcile_minute=reconcile_minute,
        scheduler_enabled=scheduler_enabled,
    )
