import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        cache_url: str,
        cache_timeout_secs: float,
        db_pool_timeout_secs: float,
        token_secret: str,
        token_max_age_hours: int,
        environment: str,
        log_level: str,
        rate_limit_enabled: bool,
        cache_ttls: dict[str, int],
    ) -> None:
        self.database_url = database_url
        self.cache_url = cache_url
        self.cache_timeout_secs = cache_timeout_secs
        self.db_pool_timeout_secs = db_pool_timeout_secs
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.environment = environment
        self.log_level = log_level
        self.rate_limit_enabled = rate_limit_enabled
        self.cache_ttls = cache_ttls

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'ledger.db'}"
    cache_url = os.getenv("LEDGER_CACHE_URL", "redis://localhost:6379/0")
    cache_timeout_secs = float(os.getenv("LEDGER_CACHE_TIMEOUT_SECS", "0.5"))
    db_pool_timeout_secs = float(os.getenv("LEDGER_DB_POOL_TIMEOUT_SECS", "10"))
    token_secret = os.getenv(
        "LEDGER_TOKEN_SECRET",
        "5d0c9a1b7e3f48a2b6c1d9e0f7a4b3c2d1e0f9a8b7c6d5e4f3a2b1c0d9e8f7a6",
    )
    token_max_age_hours = int(os.getenv("LEDGER_TOKEN_MAX_AGE_HOURS", "24"))
    environment = os.getenv("LEDGER_ENV", "development")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    rate_limit_enabled = _env_flag("LEDGER_RATE_LIMIT_ENABLED", "1")
    cache_ttls = {
        "transactions": int(os.getenv("LEDGER_TTL_TRANSACTIONS", "300")),
        "categories": int(os.getenv("LEDGER_TTL_CATEGORIES", "3600")),
        "analytics": int(os.getenv("LEDGER_TTL_ANALYTICS", "900")),
        "profile": int(os.getenv("LEDGER_TTL_PROFILE", "1800")),
    }
    return Settings(
        database_url=database_url,
        cache_url=cache_url,
        cache_timeout_secs=cache_timeout_secs,
        db_pool_timeout_secs=db_pool_timeout_secs,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        environment=environment,
        log_level=log_level,
        rate_limit_enabled=rate_limit_enabled,
        cache_ttls=cache_ttls,
    )
