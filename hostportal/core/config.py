import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # VirtFusion token accounts
    VIRTFUSION_API_URL: Optional[str] = None
    VIRTFUSION_API_TOKEN: Optional[str] = None
    VIRTFUSION_SSL_VERIFY: bool = True
    VIRTFUSION_TIMEOUT_SECONDS: float = 30.0

    # InterServer DNS hosting
    INTERSERVER_API_URL: str = "https://my.interserver.net/apiv2"
    INTERSERVER_API_KEY: Optional[str] = None
    INTERSERVER_TIMEOUT_SECONDS: float = 30.0

    # DNS plan engine
    DNS_EVICTION_MAX_WORKERS: int = 1  # 1 = sequential deletes
    DNS_SETTLEMENT_STALE_MINUTES: int = 30

    # Admin operations (renewals, sweeps, token grants)
    ADMIN_KEY: Optional[str] = None

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
    log = logger or logging.getLogger("hostportal")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "VIRTFUSION_API_URL",
        "VIRTFUSION_API_TOKEN",
        "INTERSERVER_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
