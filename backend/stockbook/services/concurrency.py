# Overview: Transaction boundaries, row locking and retry for service-layer writes.

from __future__ import annotations

import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    SELECT ... FOR UPDATE on the rows a mutation reads before writing (lots,
    documents, original lines). SQLite ignores the clause and serializes
    writers on the database file instead.
    """
    return query.with_for_update()


@contextmanager
def unit_of_work():
    """
    One atomic unit: commit on success, roll back everything on any error.

    Stock and ledger writes made inside the block become visible together or
    not at all.
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Call func, retrying lock timeouts/deadlocks (OperationalError) and lost
    version races (StaleDataError) with exponential backoff. Domain errors
    are not retried.
    """
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS:
            db.session.rollback()
            if attempt == attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))


def run_in_unit_of_work(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """Run func inside unit_of_work(), retrying the whole unit on lock conflicts."""
    def _op():
        with unit_of_work():
            return func()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
