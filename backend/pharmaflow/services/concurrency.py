# Overview: Row locking, optimistic version checks and conflict retry for approval records.

from __future__ import annotations

import time
from functools import wraps

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import ConcurrentModificationError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id column still detects conflicting writers there.
    """
    return query.with_for_update()


def check_expected_version(record, expected_version: int | None) -> None:
    """Raise ConcurrentModificationError when the caller edited a stale copy."""
    if expected_version is None:
        return
    if int(expected_version) != record.version_id:
        raise ConcurrentModificationError(
            "Record was modified by another user",
            record_id=record.id,
            expected_version=int(expected_version),
            current_version=record.version_id,
        )


def commit_or_conflict(record_id: int | None = None) -> None:
    """
    Commit the current session, mapping optimistic lock failures.

    StaleDataError (version mismatch at flush) and lock timeouts become
    ConcurrentModificationError after a rollback.
    """
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        raise ConcurrentModificationError(
            "Record was modified by another user", record_id=record_id
        ) from exc
    except OperationalError as exc:
        db.session.rollback()
        raise ConcurrentModificationError(
            "Record is locked by another transaction", record_id=record_id
        ) from exc


def retry_on_conflict(func, *, attempts: int | None = None, backoff_base: float = 0.05):
    """
    Re-run a whole operation when it loses an optimistic concurrency race.

    Only for blind writes: callers that supplied expected_version must see
    the conflict instead of silently overwriting.
    """
    if attempts is None:
        attempts = int(current_app.config.get("APPROVAL_CONFLICT_RETRIES", 3))
    attempts = max(attempts, 1)
    for attempt in range(attempts):
        try:
            return func()
        except ConcurrentModificationError:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))


def atomic(func):
    """
    Roll back the session when the wrapped operation raises.

    Version and lock failures hit by an intermediate flush surface as
    ConcurrentModificationError, same as at commit.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StaleDataError as exc:
            db.session.rollback()
            raise ConcurrentModificationError("Record was modified by another user") from exc
        except OperationalError as exc:
            db.session.rollback()
            raise ConcurrentModificationError("Record is locked by another transaction") from exc
        except Exception:
            db.session.rollback()
            raise
    return wrapper
