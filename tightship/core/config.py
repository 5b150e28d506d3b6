import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Auth
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    ADMIN_KEY: Optional[str] = None

    # Billing surface
    BILLING_URL: str = "/billing"
    TRIAL_PERIOD_DAYS: int = 30

    # Detached side effects
    TASK_BACKEND: str = "thread"  # thread | rq | inline
    TASK_MAX_WORKERS: int = 4
    TASK_QUEUE_NAME: str = "usage"

    # Usage ledger retention
    USAGE_RETENTION_MONTHS: int = 24

    # Periodic expiry sweep
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 3600

    # Tier-based rate limiting (fail open)
    RATE_LIMIT_ENABLED: bool = False

    # Audit logging
    AUDIT_ENABLED: bool = False

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("tightship")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
    ]
    if str(getattr(cfg, "TASK_BACKEND", "")).lower() == "rq":
        required_keys.append("REDIS_URL")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
