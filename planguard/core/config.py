import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    SQLITE_BUSY_TIMEOUT_SECONDS: float = 30.0

    # Period windows
    PERIOD_CYCLE: str = "billing_cycle"  # billing_cycle | calendar_month | calendar_week | calendar_day
    TIMEZONE: str = "UTC"

    # Grace periods
    DEFAULT_GRACE_SECONDS: int = 7 * 24 * 3600

    # Row lock contention
    LOCK_RETRY_ATTEMPTS: int = 3
    LOCK_RETRY_BACKOFF_SECONDS: float = 0.1

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("planguard")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    problems = []
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")
    if cfg.LOCK_RETRY_ATTEMPTS < 1:
        problems.append("LOCK_RETRY_ATTEMPTS must be at least 1")
    if cfg.DEFAULT_GRACE_SECONDS < 0:
        problems.append("DEFAULT_GRACE_SECONDS must not be negative")

    for message in problems:
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return not problems
