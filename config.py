import os
from functools import lru_cache
from pathlib import Path

WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        week_starts_on: int,
        max_retries: int,
        retry_base_secs: float,
        retry_cap_secs: float,
        bulk_threshold: int,
        reconcile_weeks: int,
        reconcile_months: int,
        reconcile_hour: int,
        reconcile_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.week_starts_on = week_starts_on
        self.max_retries = max_retries
        self.retry_base_secs = retry_base_secs
        self.retry_cap_secs = retry_cap_secs
        self.bulk_threshold = bulk_threshold
        self.reconcile_weeks = reconcile_weeks
        self.reconcile_months = reconcile_months
        self.reconcile_hour = reconcile_hour
        self.reconcile_minute = reconcile_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINCUBE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def parse_weekday(value: str) -> int:
    key = value.strip().lower()
    if key not in WEEKDAYS:
        raise ValueError(f"Unknown weekday: {value}")
    return WEEKDAYS[key]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fincube.db"
    database_url = os.getenv("FINCUBE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINCUBE_TIMEZONE", "UTC")
    week_starts_on = parse_weekday(os.getenv("FINCUBE_WEEK_STARTS_ON", "sunday"))
    max_retries = int(os.getenv("FINCUBE_MAX_RETRIES", "3"))
    retry_base_secs = float(os.getenv("FINCUBE_RETRY_BASE_SECS", "0.05"))
    retry_cap_secs = float(os.getenv("FINCUBE_RETRY_CAP_SECS", "1.0"))
    bulk_threshold = int(os.getenv("FINCUBE_BULK_THRESHOLD", "50"))
    reconcile_weeks = int(os.getenv("FINCUBE_RECONCILE_WEEKS", "4"))
    reconcile_months = int(os.getenv("FINCUBE_RECONCILE_MONTHS", "2"))
    reconcile_hour = int(os.getenv("FINCUBE_RECONCILE_HOUR", "3"))
    reconcile_minute = int(os.getenv("FINCUBE_RECONCILE_MINUTE", "15"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        week_starts_on=week_starts_on,
        max_retries=max_retries,
        retry_base_secs=retry_base_secs,
        retry_cap_secs=retry_cap_secs,
        bulk_threshold=bulk_threshold,
        reconcile_weeks=reconcile_weeks,
        reconcile_months=reconcile_months,
        reconcile_hour=reconcile_hour,
        reconcile_minute=reconcile_minute,
    )
