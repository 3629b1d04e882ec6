import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        log_level: str,
        efficiency_window: int,
        efficiency_drop_ratio: float,
        reminder_distance_threshold: float,
        reminder_days_threshold: int,
        max_import_bytes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.log_level = log_level
        self.efficiency_window = efficiency_window
        self.efficiency_drop_ratio = efficiency_drop_ratio
        self.reminder_distance_threshold = reminder_distance_threshold
        self.reminder_days_threshold = reminder_days_threshold
        self.max_import_bytes = max_import_bytes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FUELSCOPE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fuelscope.db"
    database_url = os.getenv("FUELSCOPE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FUELSCOPE_TIMEZONE", "Europe/Berlin")
    token_secret = os.getenv(
        "FUELSCOPE_TOKEN_SECRET",
        "5f0c6d1e9a0b47c3b2d8e7f61a4c9b30d2e5f8a7c6b1d0e3f4a9b8c7d6e5f401",
    )
    token_max_age_hours = int(os.getenv("FUELSCOPE_TOKEN_MAX_AGE_HOURS", "24"))
    log_level = os.getenv("FUELSCOPE_LOG_LEVEL", "INFO").upper()
    efficiency_window = int(os.getenv("FUELSCOPE_EFFICIENCY_WINDOW", "5"))
    efficiency_drop_ratio = float(os.getenv("FUELSCOPE_EFFICIENCY_DROP_RATIO", "0.8"))
    reminder_distance_threshold = float(
        os.getenv("FUELSCOPE_REMINDER_DISTANCE_THRESHOLD", "1000")
    )
    reminder_days_threshold = int(os.getenv("FUELSCOPE_REMINDER_DAYS_THRESHOLD", "30"))
    max_import_bytes = int(os.getenv("FUELSCOPE_MAX_IMPORT_BYTES", str(5 * 1024 * 1024)))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        log_level=log_level,
        efficiency_window=efficiency_window,
        efficiency_drop_ratio=efficiency_drop_ratio,
        reminder_distance_threshold=reminder_distance_threshold,
        reminder_days_threshold=reminder_days_threshold,
        max_import_bytes=max_import_bytes,
    )
