import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Document store
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    STORE_TRANSACTION_ATTEMPTS: int = 5

    # Consolidation dispatch
    QUEUE_MODE: str = "inline"  # inline | rq | worker
    REDIS_URL: str = "redis://localhost:6379"
    RQ_QUEUE_NAME: str = "consolidation"

    # Identity token verification
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: str = "HS256,RS256"  # comma-separated
    AUTH_JWT_ISSUER: Optional[str] = None
    AUTH_JWT_AUDIENCE: Optional[str] = None
    AUTH_JWKS_URL: Optional[str] = None

    # Ingestion limits
    INGEST_MAX_BODY_BYTES: int = 64 * 1024

    # Per-user weighted rate limit (fixed window)
    RATE_LIMIT_WINDOW_MS: int = 60_000
    RATE_LIMIT_MAX_UNITS: int = 60

    # HTTP
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

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
    log = logger or logging.getLogger("dreamstate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL"]
    if not getattr(cfg, "AUTH_JWKS_URL", None):
        required_keys.append("AUTH_JWT_SECRET")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
