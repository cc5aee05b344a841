"""
Central configuration for courier.
Uses Pydantic BaseSettings for type-safe configuration from environment variables.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import FatalConfigError

# Resolve .env relative to this file (courier/config.py → project root)
_ENV_FILE = Path(__file__).parent.parent / ".env"


def _load_env_file() -> None:
    """
    Load .env into os.environ, but only for keys that are currently unset
    or set to empty strings. Explicit non-empty shell values still win.
    """
    if not _ENV_FILE.exists():
        return
    from dotenv import dotenv_values
    for key, value in dotenv_values(_ENV_FILE).items():
        if value and not os.environ.get(key):
            os.environ[key] = value


# Run at import time so Settings() sees the correct values
_load_env_file()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Outbox Store / object store (Supabase REST)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    store_backend: Literal["rest", "sqlite"] = "rest"
    storage_bucket: str = "media"

    # Messaging channel
    channel_backend: Literal["bridge", "telegram"] = "bridge"
    bridge_url: str = "http://localhost:3000"
    telegram_bot_token: str = ""

    # ── Dispatch worker ─────────────────────────────────────────────────────────
    dispatch_poll_interval: float = 2.0
    dispatch_batch_size: int = 20
    max_attempts: int = 5
    claim_timeout: float = 300.0  # claims older than this are presumed abandoned

    # ── Bounded retry helper ────────────────────────────────────────────────────
    backoff_base_delay: float = 0.5
    backoff_max_retries: int = 3

    # ── Flush worker ────────────────────────────────────────────────────────────
    flush_interval: float = 10.0
    fallback_max_replays: int = 50

    # ── Timeouts (seconds) ──────────────────────────────────────────────────────
    http_timeout: float = 15.0

    # Environment
    data_dir: str = "./data"
    log_level: str = "INFO"
    json_logs: bool = False
    health_port: int = 8080

    @field_validator("supabase_url", "bridge_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("dispatch_batch_size", "max_attempts", "backoff_max_retries", "fallback_max_replays")
    @classmethod
    def positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @property
    def fallback_log_path(self) -> str:
        return os.path.join(self.data_dir, "fallback.jsonl")

    @property
    def fallback_dead_path(self) -> str:
        return os.path.join(self.data_dir, "fallback.dead.jsonl")

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, "courier.db")

    @property
    def media_dir(self) -> str:
        return os.path.join(self.data_dir, "media")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.data_dir, "logs")

    def validate_runtime(self) -> None:
        """Raise FatalConfigError if the selected backends lack credentials."""
        missing: list[str] = []
        if self.store_backend == "rest":
            if not self.supabase_url:
                missing.append("SUPABASE_URL")
            if not self.supabase_service_role_key:
                missing.append("SUPABASE_SERVICE_ROLE_KEY")
        if self.channel_backend == "telegram" and not self.telegram_bot_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if self.channel_backend == "bridge" and not self.bridge_url:
            missing.append("BRIDGE_URL")
        if missing:
            raise FatalConfigError(
                "Missing required configuration: " + ", ".join(missing)
            )


def get_settings() -> "Settings":
    """Return the application settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


_settings: Settings | None = None


class _SettingsProxy:
    """Lazy proxy so `from courier.config import settings` works without eager init."""
    def __getattr__(self, name):
        return getattr(get_settings(), name)


settings = _SettingsProxy()  # type: ignore[assignment]
