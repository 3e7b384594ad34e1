# Overview: Row locking, first-insert races and retry helpers shared by the workflow and the stock ledger.

"""
Every mutating service call is one unit of work run through run_with_retry.
Conflicts come in three shapes:

- a lock wait that times out or deadlocks (OperationalError): re-run;
- a version_id check that matched no row (StaleDataError): re-run;
- two writers inserting the same unique key through lock_or_create
  (InsertRaceError): re-run; the second pass finds the winner's row.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InsertRaceError(Exception):
    """A concurrent writer inserted the same unique key first."""


RETRYABLE_ERRORS = (OperationalError, StaleDataError, InsertRaceError)


def lock_for_update(query):
    """
    Apply row-level locking for request and stock record reads.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the version_id
    optimistic lock is what catches concurrent writers.
    """
    return query.with_for_update()


def lock_or_create(query, factory: Callable[[], T]) -> tuple[T, bool]:
    """
    Return (row, created) for the single row `query` matches, locked.

    A missing row is built with factory() and flushed at once, so call this
    before the unit of work has other pending writes. When a concurrent
    writer inserted the same unique key first, the IntegrityError surfaces
    as InsertRaceError; run_with_retry rolls back and re-runs the unit of
    work, which then finds the winner's row.
    """
    row = lock_for_update(query).first()
    if row is not None:
        return row, False

    row = factory()
    db.session.add(row)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise InsertRaceError(f"Concurrent insert of {type(row).__name__}: {exc.orig}") from exc
    return row, True


def default_attempts() -> int:
    """Retry budget from the active app's workflow config, 3 outside an app context."""
    from matreq.config import current_workflow_config

    try:
        return current_workflow_config().ledger_retry_attempts
    except RuntimeError:
        return 3


def run_with_retry(func: Callable[[], T], *, attempts: int | None = None, backoff_base: float = 0.05) -> T:
    """
    Run a unit of work, re-running it after lock and version conflicts.

    The session is rolled back before each re-run so func starts from fresh
    reads. Business errors propagate on the first raise; the last conflict
    propagates once the budget is spent.
    """
    if attempts is None:
        attempts = default_attempts()
    attempt = 0
    while True:
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            attempt += 1
            if attempt >= attempts:
                logger.warning("Giving up after %s conflicting attempt(s): %s", attempt, exc)
                raise
            logger.debug("Retrying after concurrency conflict (attempt %s): %s", attempt, exc)
            time.sleep(backoff_base * (2 ** (attempt - 1)))
