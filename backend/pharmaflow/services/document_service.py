# Overview: Service-layer operations for record numbering; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from pharmaflow.time_utils import utcnow
from .errors import WorkflowValidationError


def _increment(prefix: str, period: str):
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.prefix == prefix,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1, updated_at=utcnow())
    )
    return db.session.execute(stmt)


def _current(prefix: str, period: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(prefix=prefix, period=period)
        .scalar()
    )


def next_record_number(prefix: str, *, at: datetime | None = None, pad: int = 4) -> str:
    """
    Atomically allocate the next number for a prefix within the month,
    e.g. QC-202610-0001.

    The UPDATE takes the row lock, so concurrent generators serialize on it.
    Runs inside the caller's transaction; a lost race on the first number of
    a month is absorbed by a savepoint instead of rolling back the caller.
    """
    if not prefix:
        raise WorkflowValidationError("prefix is required")
    period = (at or utcnow()).strftime("%Y%m")

    result = _increment(prefix, period)
    if result.rowcount:
        next_num = _current(prefix, period) - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(prefix=prefix, period=period, next_number=2))
            next_num = 1
        except IntegrityError:
            result = _increment(prefix, period)
            if not result.rowcount:
                raise
            next_num = _current(prefix, period) - 1

    return f"{prefix}-{period}-{next_num:0{pad}d}"
