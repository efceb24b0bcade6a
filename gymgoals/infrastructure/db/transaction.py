"""
Serializable transactions for the goal voting / fundraising engine

Every mutating goal operation runs inside exactly one serializable_transaction().
Helpers that must be part of the same atomic unit receive the yielded Session
as a parameter; they never open a transaction of their own.
"""
from contextlib import contextmanager
from typing import Iterator

import psycopg.errors
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

SERIALIZABLE = "SERIALIZABLE"

# SQLSTATE: serialization_failure, deadlock_detected
CONFLICT_SQLSTATES = frozenset({"40001", "40P01"})
# SQLSTATE: query_canceled (statement_timeout), idle_in_transaction_session_timeout
TIMEOUT_SQLSTATES = frozenset({"57014", "25P03"})

VOTE_UNIQUE_CONSTRAINT = "uq_goal_vote_member"
# SQLite reports the columns instead of the constraint name
_VOTE_UNIQUE_COLUMNS = "goal_votes.goal_id, goal_votes.member_id"


@contextmanager
def serializable_transaction(session_factory: sessionmaker, timeout_ms: int) -> Iterator[Session]:
    """
    Open a session pinned to SERIALIZABLE isolation, commit on success.

    Any exception (including a rule violation raised by the caller) rolls the
    whole unit back and is re-raised. Serialization failures usually surface
    on commit, so the commit is inside the same guard.

    Usage:
        with serializable_transaction(factory, 5000) as tx:
            goal = tx.get(GoalModel, goal_id)
            ...
    """
    session = session_factory()
    try:
        session.connection(execution_options={"isolation_level": SERIALIZABLE})
        _apply_timeout(session, timeout_ms)
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _apply_timeout(session: Session, timeout_ms: int) -> None:
    """Bound the transaction duration (PostgreSQL only, scoped with SET LOCAL)"""
    if session.get_bind().dialect.name != "postgresql":
        return
    ms = int(timeout_ms)
    session.execute(text(f"SET LOCAL statement_timeout = {ms}"))
    session.execute(text(f"SET LOCAL lock_timeout = {ms}"))
    session.execute(text(f"SET LOCAL idle_in_transaction_session_timeout = {ms}"))


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transaction_conflict(exc: BaseException) -> bool:
    """
    True if the transaction lost a race and the same request may be retried.

    Covers serialization failures, deadlocks and a concurrent first vote of the
    same member hitting the (goal_id, member_id) unique constraint.
    """
    if not isinstance(exc, DBAPIError):
        return False

    if isinstance(exc.orig, (psycopg.errors.SerializationFailure, psycopg.errors.DeadlockDetected)):
        return True
    if _sqlstate(exc) in CONFLICT_SQLSTATES:
        return True

    if isinstance(exc, IntegrityError):
        diag = getattr(exc.orig, "diag", None)
        if getattr(diag, "constraint_name", None) == VOTE_UNIQUE_CONSTRAINT:
            return True
        message = str(exc.orig)
        return VOTE_UNIQUE_CONSTRAINT in message or _VOTE_UNIQUE_COLUMNS in message

    return False


def is_transaction_timeout(exc: BaseException) -> bool:
    """True if the database cancelled the transaction because of its timeout"""
    if not isinstance(exc, DBAPIError):
        return False
    if isinstance(exc.orig, psycopg.errors.QueryCanceled):
        return True
    return _sqlstate(exc) in TIMEOUT_SQLSTATES
