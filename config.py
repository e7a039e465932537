import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_secs: int,
        recent_transactions: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_secs = session_max_age_secs
        self.recent_transactions = recent_transactions
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'finance.db'}"
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    session_secret = os.getenv(
        "FINANCE_SESSION_SECRET",
        "5d0f3c6b9a1e47f2b8c4d7e6a9f0b1c2d3e4f5a6b7c8d9e0f1a2b3c4d5e6f7a8",
    )
    session_max_age_secs = int(
        os.getenv("FINANCE_SESSION_MAX_AGE_SECS", str(7 * 24 * 3600))
    )
    recent_transactions = int(os.getenv("FINANCE_RECENT_TRANSACTIONS", "5"))
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_secs=session_max_age_secs,
        recent_transactions=recent_transactions,
        log_level=log_level,
    )
