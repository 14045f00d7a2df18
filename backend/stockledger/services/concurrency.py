# Overview: Service-layer helpers for concurrency; row locking, DB retry and the
# retry-with-classifier combinator used around unreliable external calls.

from __future__ import annotations

import time
from typing import Callable, Iterable

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


# Lower-cased fragments of driver/network messages that indicate a transient
# failure (DNS, refused/reset connections, timeouts, dropped server).
TRANSIENT_ERROR_PATTERNS = (
    "getaddrinfo",
    "enotfound",
    "eai_again",
    "econnrefused",
    "econnreset",
    "etimedout",
    "timed out",
    "timeout",
    "connection refused",
    "connection reset",
    "connection aborted",
    "server has gone away",
    "lost connection",
    "temporary failure in name resolution",
    "name or service not known",
    "service unavailable",
    "too many connections",
)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the preceding write-touch is what takes the lock.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, "database is locked") and
    StaleDataError (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def is_transient_error(exc: BaseException, patterns: Iterable[str] = TRANSIENT_ERROR_PATTERNS) -> bool:
    """True when the exception (or anything in its cause chain) looks like a network blip."""
    seen = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        message = f"{type(current).__name__} {current}".lower()
        if any(p in message for p in patterns):
            return True
        current = current.__cause__ or current.__context__
    return False


def retry_with_classifier(
    func: Callable,
    *,
    label: str,
    attempts: int = 3,
    delay: float = 4.0,
    classify: Callable[[BaseException], bool] = is_transient_error,
    on_exhausted: Callable[[BaseException, int], BaseException] | None = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Call func() with bounded retries for transient failures.

    - attempt n (1-based) that fails transiently sleeps delay * 2**(n-1)
    - terminal errors (classify -> False) propagate immediately
    - when every attempt failed transiently, on_exhausted(exc, attempts) builds
      the error to raise (chained to the last failure); without it the last
      failure is re-raised
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except Exception as exc:
            if not classify(exc):
                raise
            if attempt >= attempts:
                current_app.logger.error("%s failed after %d attempts: %s", label, attempts, exc)
                if on_exhausted is None:
                    raise
                raise on_exhausted(exc, attempts) from exc
            wait = delay * (2 ** (attempt - 1))
            current_app.logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt, attempts, wait, exc,
            )
            sleep(wait)
