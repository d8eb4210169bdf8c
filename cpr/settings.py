from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Store
    db_path: str = os.getenv("CPR_DB_PATH", "cpr.db")
    # Empty means every namespace.
    namespace: str = os.getenv("CPR_WATCH_NAMESPACE", "")
    event_limit: int = _env_int("CPR_EVENT_LIMIT", 100)

    # Reconcile loop
    workers: int = _env_int("CPR_WORKERS", 2)
    queue_size: int = _env_int("CPR_QUEUE_SIZE", 1024)
    resync_interval_s: int = _env_int("CPR_RESYNC_INTERVAL_S", 600)
    not_ready_requeue_s: float = _env_float("CPR_NOT_READY_REQUEUE_S", 10.0)
    shutdown_grace_s: float = _env_float("CPR_SHUTDOWN_GRACE_S", 10.0)

    # Retry knobs
    conflict_retries: int = _env_int("CPR_CONFLICT_RETRIES", 5)
    backoff_base_s: float = _env_float("CPR_BACKOFF_BASE_S", 0.005)
    backoff_max_s: float = _env_float("CPR_BACKOFF_MAX_S", 300.0)

    # Start the controller together with the HTTP app.
    start_controller: bool = _env_bool("CPR_START_CONTROLLER", True)


settings = Settings()
