import logging
import os
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_SECRET = (
    "5d1c8e0b2f7a4c39a6e1d0b7c4f28e93a1b6d5c7e8f90a2b3c4d5e6f7a8b9c0d"
)


class Settings:
    def __init__(
        self,
        database_url: str,
        identity_secret: str,
        identity_max_age_secs: int,
        invite_ttl_days: int,
        invite_code_length: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.identity_secret = identity_secret
        self.identity_max_age_secs = identity_max_age_secs
        self.invite_ttl_days = invite_ttl_days
        self.invite_code_length = invite_code_length
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("COUPLES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("COUPLES_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'couples.db'}"
    identity_secret = os.getenv("COUPLES_IDENTITY_SECRET") or DEFAULT_IDENTITY_SECRET
    if identity_secret == DEFAULT_IDENTITY_SECRET:
        logger.warning(
            "COUPLES_IDENTITY_SECRET is not set; using the built-in development secret"
        )
    identity_max_age_secs = int(os.getenv("COUPLES_IDENTITY_MAX_AGE_SECS", "3600"))
    invite_ttl_days = int(os.getenv("COUPLES_INVITE_TTL_DAYS", "7"))
    invite_code_length = int(os.getenv("COUPLES_INVITE_CODE_LENGTH", "8"))
    log_level = os.getenv("COUPLES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        identity_secret=identity_secret,
        identity_max_age_secs=identity_max_age_secs,
        invite_ttl_days=invite_ttl_days,
        invite_code_length=invite_code_length,
        log_level=log_level,
    )
