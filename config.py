import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        stats_window_days: int,
        audit_interval_minutes: int,
        seed_categories: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.stats_window_days = stats_window_days
        self.audit_interval_minutes = audit_interval_minutes
        self.seed_categories = seed_categories


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    stats_window_days = int(os.getenv("LEDGER_STATS_WINDOW_DAYS", "30"))
    audit_interval_minutes = int(os.getenv("LEDGER_AUDIT_INTERVAL_MINUTES", "60"))
    seed_categories = _env_flag("LEDGER_SEED_CATEGORIES", "1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        stats_window_days=stats_window_days,
        audit_interval_minutes=audit_interval_minutes,
        seed_categories=seed_categories,
    )
