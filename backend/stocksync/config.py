# backend/stocksync/config.py
from __future__ import annotations
import os


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stocksync.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stocksync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bearer token for the /api/sync trigger endpoints. Unset = endpoints disabled.
    SYNC_SERVICE_TOKEN = os.environ.get("SYNC_SERVICE_TOKEN")

    SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2024-07")

    # Advisory lock leases (availability over strict exclusion: holders that
    # crash simply let their lease run out)
    LOCK_TTL_MINUTES = _env_int("LOCK_TTL_MINUTES", 15)
    LOCK_MAX_TTL_MINUTES = _env_int("LOCK_MAX_TTL_MINUTES", 120)

    # Static backpressure between consecutive remote set calls
    PUSH_CALL_DELAY_SECONDS = _env_float("PUSH_CALL_DELAY_SECONDS", 0.25)

    # Shared HTTP retry wrapper
    HTTP_MAX_ATTEMPTS = _env_int("HTTP_MAX_ATTEMPTS", 3)
    HTTP_BACKOFF_BASE_SECONDS = _env_float("HTTP_BACKOFF_BASE_SECONDS", 1.0)
    HTTP_BACKOFF_MAX_SECONDS = _env_float("HTTP_BACKOFF_MAX_SECONDS", 10.0)
    HTTP_RETRY_AFTER_CAP_SECONDS = _env_float("HTTP_RETRY_AFTER_CAP_SECONDS", 5.0)
    HTTP_TIMEOUT_SECONDS = _env_float("HTTP_TIMEOUT_SECONDS", 30.0)

    # Remote fetch strategy
    BULK_POLL_INTERVAL_SECONDS = _env_float("BULK_POLL_INTERVAL_SECONDS", 2.0)
    BULK_MAX_WAIT_SECONDS = _env_float("BULK_MAX_WAIT_SECONDS", 300.0)
    PAGINATED_MAX_ITEMS = _env_int("PAGINATED_MAX_ITEMS", 50000)
    FETCH_PAGE_SIZE = _env_int("FETCH_PAGE_SIZE", 50)
    FETCH_RATE_DELAY_SECONDS = _env_float("FETCH_RATE_DELAY_SECONDS", 0.2)

    # Reconciliation
    RECONCILE_BATCH_SIZE = _env_int("RECONCILE_BATCH_SIZE", 100)
    RUN_MAX_DURATION_MINUTES = _env_int("RUN_MAX_DURATION_MINUTES", 60)
