import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional


class SpentConvention(str, Enum):
    signed = "signed"
    outflow = "outflow"


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_days: int,
        frontend_url: Optional[str],
        log_level: str,
        spent_convention: SpentConvention,
        rollover_guard: bool,
        allow_overdraft: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_days = refresh_token_ttl_days
        self.frontend_url = frontend_url
        self.log_level = log_level
        self.spent_convention = spent_convention
        self.rollover_guard = rollover_guard
        self.allow_overdraft = allow_overdraft


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("ENVELOPES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "envelopes.db"
    database_url = os.getenv("ENVELOPES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("ENVELOPES_TIMEZONE", "Europe/Berlin")
    token_secret = os.getenv(
        "ENVELOPES_TOKEN_SECRET",
        "5f0c8e4b7f1d4c2a9e6b3a1d8c7e2f4a6b9d0c3e5f7a1b2c4d6e8f0a2b4c6d8e",
    )
    access_token_ttl_secs = int(os.getenv("ENVELOPES_ACCESS_TOKEN_TTL_SECS", "3600"))
    refresh_token_ttl_days = int(os.getenv("ENVELOPES_REFRESH_TOKEN_TTL_DAYS", "30"))
    frontend_url = os.getenv("ENVELOPES_FRONTEND_URL") or None
    log_level = os.getenv("ENVELOPES_LOG_LEVEL", "INFO").upper()
    try:
        spent_convention = SpentConvention(
            os.getenv("ENVELOPES_SPENT_CONVENTION", "signed").strip().lower()
        )
    except ValueError as exc:
        raise ValueError(
            "ENVELOPES_SPENT_CONVENTION must be 'signed' or 'outflow'"
        ) from exc
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        access_token_ttl_secs=access_token_ttl_secs,
        refresh_token_ttl_days=refresh_token_ttl_days,
        frontend_url=frontend_url,
        log_level=log_level,
        spent_convention=spent_convention,
        rollover_guard=_env_flag("ENVELOPES_ROLLOVER_GUARD"),
        allow_overdraft=_env_flag("ENVELOPES_ALLOW_OVERDRAFT"),
    )
