from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import os


class SyncMode(Enum):
    """How the sync loop treats an empty ``next_cursor`` from the provider.

    POLL waits and re-polls a bounded number of times; WEBHOOK treats it as
    "nothing pending" and exits with an empty page-set.
    """

    POLL = "poll"
    WEBHOOK = "webhook"


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Sync engine configuration loaded at process startup."""

    database_url: str = "sqlite:///txnsync.db"
    mode: SyncMode = SyncMode.WEBHOOK
    max_mutation_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    poll_interval_seconds: float = 2.0
    max_poll_attempts: int = 5
    sync_timeout_seconds: float | None = None
    page_size: int = 500
    sweep_workers: int = 4
    log_level: str = "INFO"


def _int_env(name: str, default: int, *, minimum: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


def load_sync_config_from_env() -> SyncConfig:
    """Load sync config from env and validate it."""
    mode_value = os.environ.get("TXNSYNC_SYNC_MODE", "webhook").strip().lower()
    if mode_value not in {"poll", "webhook"}:
        raise ValueError("TXNSYNC_SYNC_MODE must be one of: poll, webhook")

    page_size = _int_env("TXNSYNC_PAGE_SIZE", 500, minimum=1)
    if page_size > 500:
        # Plaid rejects larger pages on /transactions/sync
        raise ValueError("TXNSYNC_PAGE_SIZE must be <= 500")

    log_level = os.environ.get("TXNSYNC_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"}:
        raise ValueError(f"Unsupported TXNSYNC_LOG_LEVEL: {log_level!r}")

    return SyncConfig(
        database_url=os.environ.get("DATABASE_URL", "").strip()
        or "sqlite:///txnsync.db",
        mode=SyncMode(mode_value),
        max_mutation_retries=_int_env("TXNSYNC_MAX_MUTATION_RETRIES", 3, minimum=0),
        retry_base_delay_seconds=_float_env("TXNSYNC_RETRY_BASE_DELAY_SECONDS", 1.0)
        or 0.0,
        poll_interval_seconds=_float_env("TXNSYNC_POLL_INTERVAL_SECONDS", 2.0) or 0.0,
        max_poll_attempts=_int_env("TXNSYNC_MAX_POLL_ATTEMPTS", 5, minimum=1),
        sync_timeout_seconds=_float_env("TXNSYNC_SYNC_TIMEOUT_SECONDS", None),
        page_size=page_size,
        sweep_workers=_int_env("TXNSYNC_SWEEP_WORKERS", 4, minimum=1),
        log_level=log_level,
    )
