# backend/territory_engine/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///territory_engine.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Storage-layer retry policy (deadlocks, lock timeouts, stale versions)
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
    DB_RETRY_BACKOFF_BASE = float(os.environ.get("DB_RETRY_BACKOFF_BASE", "0.1"))

    # Default deadline applied when the caller does not send X-Request-Timeout
    OPERATION_TIMEOUT_SECONDS = float(os.environ.get("OPERATION_TIMEOUT_SECONDS", "30"))

    # Payout batches commit in chunks of this many transactions
    PAYOUT_CHUNK_SIZE = int(os.environ.get("PAYOUT_CHUNK_SIZE", "500"))

    # Retries for the account re-pointing collaborator call
    COLLABORATOR_RETRY_ATTEMPTS = int(os.environ.get("COLLABORATOR_RETRY_ATTEMPTS", "3"))
    COLLABORATOR_RETRY_BACKOFF_BASE = float(os.environ.get("COLLABORATOR_RETRY_BACKOFF_BASE", "0.2"))
