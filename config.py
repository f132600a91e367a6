import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_banks: list[str],
        page_size: int,
        anomaly_sample_size: int,
        anomaly_window_days: int,
        anomaly_min_history: int,
        anomaly_multiplier: Decimal,
        anomaly_floor: Decimal,
        high_value_floor: Decimal,
        budget_warning_pct: Decimal,
        alert_dedup_hours: int,
        uncategorized_label: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_banks = default_banks
        self.page_size = page_size
        self.anomaly_sample_size = anomaly_sample_size
        self.anomaly_window_days = anomaly_window_days
        self.anomaly_min_history = anomaly_min_history
        self.anomaly_multiplier = anomaly_multiplier
        self.anomaly_floor = anomaly_floor
        self.high_value_floor = high_value_floor
        self.budget_warning_pct = budget_warning_pct
        self.alert_dedup_hours = alert_dedup_hours
        self.uncategorized_label = uncategorized_label


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("HOUSEHOLD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_banks(raw: str) -> list[str]:
    return [b.strip() for b in raw.split(",") if b.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("HOUSEHOLD_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "household.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("HOUSEHOLD_TIMEZONE", "America/Mexico_City")
    default_banks = _split_banks(os.getenv("HOUSEHOLD_DEFAULT_BANKS", "Banregio,BBVA"))
    page_size = int(os.getenv("HOUSEHOLD_PAGE_SIZE", "50"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_banks=default_banks,
        page_size=page_size,
        anomaly_sample_size=int(os.getenv("HOUSEHOLD_ANOMALY_SAMPLE_SIZE", "50")),
        anomaly_window_days=int(os.getenv("HOUSEHOLD_ANOMALY_WINDOW_DAYS", "30")),
        anomaly_min_history=int(os.getenv("HOUSEHOLD_ANOMALY_MIN_HISTORY", "5")),
        anomaly_multiplier=Decimal(os.getenv("HOUSEHOLD_ANOMALY_MULTIPLIER", "3")),
        anomaly_floor=Decimal(os.getenv("HOUSEHOLD_ANOMALY_FLOOR", "100")),
        high_value_floor=Decimal(os.getenv("HOUSEHOLD_HIGH_VALUE_FLOOR", "1000")),
        budget_warning_pct=Decimal(os.getenv("HOUSEHOLD_BUDGET_WARNING_PCT", "80")),
        alert_dedup_hours=int(os.getenv("HOUSEHOLD_ALERT_DEDUP_HOURS", "24")),
        uncategorized_label=os.getenv("HOUSEHOLD_UNCATEGORIZED_LABEL", "Sin categoría"),
    )
