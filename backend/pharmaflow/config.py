# backend/pharmaflow/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pharmaflow.sqlite3 by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///pharmaflow.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session tokens (absolute lifetime, no refresh)
    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "12"))

    # Stage a freshly generated record starts in
    QC_INITIAL_STAGE_CODE = os.environ.get("QC_INITIAL_STAGE_CODE", "QC_PENDING")
    WAREHOUSE_INITIAL_STAGE_CODE = os.environ.get("WAREHOUSE_INITIAL_STAGE_CODE", "WAREHOUSE_REVIEW")

    # Manager sign-off depth per record type (0 means the first approval is final)
    QC_MANAGER_APPROVAL_LEVELS = int(os.environ.get("QC_MANAGER_APPROVAL_LEVELS", "1"))
    WAREHOUSE_MANAGER_APPROVAL_LEVELS = int(os.environ.get("WAREHOUSE_MANAGER_APPROVAL_LEVELS", "2"))

    # Final QC approval generates the warehouse approval in the same transaction
    AUTO_CREATE_WAREHOUSE_APPROVAL = _env_bool("AUTO_CREATE_WAREHOUSE_APPROVAL", True)

    # Blind writes (no expected_version from the client) are re-applied on conflict
    APPROVAL_CONFLICT_RETRIES = int(os.environ.get("APPROVAL_CONFLICT_RETRIES", "3"))

    # Optional callable(record_id, status, actor_user_id); None uses the built-in sink
    APPROVAL_NOTIFICATION_SINK = None

    CORS_ALLOWED_ORIGINS = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:4173",
        "http://127.0.0.1:4173",
    ]
