"""Bounded retry of a unit of work, one fresh transaction per attempt.

Each attempt opens a brand-new session from ``session_factory`` so the unit of
work reads a snapshot taken after any competing transaction from an earlier
attempt has committed. Reusing a session across attempts would keep the stale
snapshot and retry into the same collision.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNIQUE_SIGNATURES = (
    "unique constraint failed",  # sqlite
    "error 1062",  # mysql
    "duplicate entry",  # mysql
    "sqlstate 23505",  # postgres
    "duplicate key value violates unique constraint",  # postgres
)
_SERIALIZATION_SIGNATURES = (
    "could not serialize access",  # postgres
    "sqlstate 40001",  # postgres
    "deadlock found",  # mysql 1213
    "lock wait timeout exceeded",  # mysql 1205
    "database is locked",  # sqlite
)


def _driver_code(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    args = getattr(orig, "args", None)
    if args and isinstance(args[0], int):
        return str(args[0])
    return None


def _message(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    return f"{exc} {orig or ''}".lower()


def is_unique_violation(exc: BaseException) -> bool:
    """True when ``exc`` is a uniqueness violation on any supported driver."""
    if not isinstance(exc, (IntegrityError, DBAPIError)):
        return False
    if _driver_code(exc) in ("23505", "1062"):
        return True
    text = _message(exc)
    return any(signature in text for signature in _UNIQUE_SIGNATURES)


def is_serialization_failure(exc: BaseException) -> bool:
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False
    if _driver_code(exc) in ("40001", "40P01", "1213", "1205"):
        return True
    text = _message(exc)
    return any(signature in text for signature in _SERIALIZATION_SIGNATURES)


def is_transient_conflict(exc: BaseException) -> bool:
    return is_unique_violation(exc) or is_serialization_failure(exc)


def run_in_transaction(
    session_factory: sessionmaker | Callable[[], Session],
    unit_of_work: Callable[[Session], T],
    *,
    max_attempts: int,
    is_retryable: Callable[[BaseException], bool],
    isolation_level: str | None = None,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Run ``unit_of_work`` in its own transaction, retrying retryable failures.

    ``unit_of_work`` receives an open session and must not commit; the
    combinator commits on success and rolls back on any error. Errors for which
    ``is_retryable`` is false propagate immediately. When every attempt fails
    with a retryable error the last one is re-raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    last_exc: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        session = session_factory()
        try:
            if isolation_level:
                session.connection(execution_options={"isolation_level": isolation_level})
            result = unit_of_work(session)
            session.commit()
            return result
        except Exception as exc:
            session.rollback()
            if not is_retryable(exc):
                raise
            last_exc = exc
            logger.info(
                "transaction_retry attempt=%s max_attempts=%s error=%s",
                attempt,
                max_attempts,
                exc.__class__.__name__,
            )
            if on_retry is not None:
                on_retry(attempt, exc)
        finally:
            session.close()
    raise last_exc
