import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        db_timeout_secs: float,
        timezone: str,
        token_secret: str,
        token_max_age_secs: int,
        summary_cron: str,
        summary_enabled: bool,
        admin_emails: frozenset[str],
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.db_timeout_secs = db_timeout_secs
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_secs = token_max_age_secs
        self.summary_cron = summary_cron
        self.summary_enabled = summary_enabled
        self.admin_emails = admin_emails
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    db_timeout_secs = float(os.getenv("FINANCE_DB_TIMEOUT_SECS", "5"))
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    token_secret = os.getenv(
        "FINANCE_TOKEN_SECRET",
        "4f1c0b8e2d7a93e65b0c1f7d8a2e4b6c9d3f5a7e1b8c0d2f4a6e8b1c3d5f7a9e",
    )
    token_max_age_secs = int(os.getenv("FINANCE_TOKEN_MAX_AGE_SECS", "86400"))
    summary_cron = os.getenv("FINANCE_SUMMARY_CRON", "0 22 28-31 * *")
    summary_enabled = _parse_bool(os.getenv("FINANCE_SUMMARY_ENABLED", "1"))
    admin_emails = frozenset(
        email.strip().lower()
        for email in os.getenv("FINANCE_ADMIN_EMAILS", "").split(",")
        if email.strip()
    )
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        db_timeout_secs=db_timeout_secs,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_secs=token_max_age_secs,
        summary_cron=summary_cron,
        summary_enabled=summary_enabled,
        admin_emails=admin_emails,
        log_level=log_level,
    )
