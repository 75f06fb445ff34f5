"""Environment driven configuration for NeoList."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_number(name: str, default: float, *, minimum: float = 0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be numeric, got {raw!r}") from exc
    if value < minimum or value != value or value in (float("inf"), float("-inf")):
        raise ValueError(f"{name} must be a finite number >= {minimum}, got {raw!r}")
    return value


@dataclass(frozen=True)
class ZimbraSettings:
    """Connection parameters for the Zimbra CalDAV endpoint."""

    dav_url: str = "https://mail.example.org"
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    tasks_folder: str = "Tasks"
    verify_ssl: bool = True
    timeout_seconds: float = 15.0
    client_cache_seconds: float = 300.0

    def tasks_url(self, email: str) -> str:
        return f"{self.dav_url.rstrip('/')}/dav/{email}/{self.tasks_folder}/"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./data/neolist.db"
    vpd_procedure: str = "pkg_session_mgr.set_user"
    zimbra: ZimbraSettings = field(default_factory=ZimbraSettings)
    queue_batch_size: int = 20
    queue_poll_seconds: int = 5
    max_retries: int = 3
    retry_backoff_seconds: int = 60
    claim_timeout_seconds: int = 600
    pull_interval_seconds: int = 300
    in_process_worker: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        zimbra = ZimbraSettings(
            dav_url=os.getenv("ZIMBRA_DAV_URL", ZimbraSettings.dav_url),
            admin_email=os.getenv("ZIMBRA_ADMIN_EMAIL") or None,
            admin_password=os.getenv("ZIMBRA_ADMIN_PASSWORD") or None,
            tasks_folder=os.getenv("ZIMBRA_TASKS_FOLDER", ZimbraSettings.tasks_folder),
            verify_ssl=_env_bool("ZIMBRA_VERIFY_SSL", True),
            timeout_seconds=_env_number("ZIMBRA_TIMEOUT_SECONDS", 15.0, minimum=0.1),
            client_cache_seconds=_env_number("ZIMBRA_CLIENT_CACHE_SECONDS", 300.0),
        )
        return cls(
            database_url=os.getenv("NEOLIST_DATABASE_URL", cls.database_url),
            vpd_procedure=os.getenv("NEOLIST_VPD_PROCEDURE", cls.vpd_procedure),
            zimbra=zimbra,
            queue_batch_size=int(_env_number("SYNC_QUEUE_BATCH_SIZE", 20, minimum=1)),
            queue_poll_seconds=int(_env_number("SYNC_QUEUE_POLL_SECONDS", 5, minimum=1)),
            max_retries=int(_env_number("SYNC_MAX_RETRIES", 3)),
            retry_backoff_seconds=int(_env_number("SYNC_RETRY_BACKOFF_SECONDS", 60)),
            claim_timeout_seconds=int(_env_number("SYNC_CLAIM_TIMEOUT_SECONDS", 600, minimum=1)),
            pull_interval_seconds=int(_env_number("SYNC_PULL_INTERVAL_SECONDS", 300)),
            in_process_worker=_env_bool("SYNC_IN_PROCESS_WORKER", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process wide settings, loaded once from the environment."""

    return Settings.from_env()
