"""Database engine, session factory, and the transaction boundary.

Every lifecycle operation (create, lock, release, move, location change)
runs through `run_in_transaction()`, which opens one session, commits on
success, rolls back on any error, and retries once on transient store
errors (deadlock, lock timeout, serialization failure).

FastAPI dependencies:
  - get_session_factory() → the sessionmaker used by mutating routes
  - get_db()              → a read session for listing/detail routes
"""

import logging
from typing import Awaitable, Callable, TypeVar

from fastapi import Depends
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=20,
    max_overflow=10,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class Base(DeclarativeBase):
    pass


# ── Transaction boundary ────────────────────────────────────

# SQLSTATEs worth a second attempt: serialization_failure, deadlock_detected,
# lock_not_available
TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}


def is_transient(exc: OperationalError) -> bool:
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if code:
        return code in TRANSIENT_SQLSTATES
    return "deadlock" in str(exc).lower() or "lock" in str(exc).lower()


async def run_in_transaction(
    session_factory: async_sessionmaker,
    operation: Callable[[AsyncSession], Awaitable[T]],
    retries: int | None = None,
) -> T:
    """Run `operation(session)` inside one transaction.

    Business-rule errors propagate untouched after rollback. Transient
    store errors are retried up to `retries` extra times.
    """
    attempts_left = settings.transient_retries if retries is None else retries
    while True:
        async with session_factory() as session:
            try:
                result = await operation(session)
                await session.commit()
                return result
            except OperationalError as exc:
                await session.rollback()
                if attempts_left <= 0 or not is_transient(exc):
                    raise
                attempts_left -= 1
                logger.warning("Transient store error, retrying: %s", exc.orig)
            except Exception:
                await session.rollback()
                raise


# ── Session dependencies ────────────────────────────────────

def get_session_factory() -> async_sessionmaker:
    return async_session


async def get_db(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AsyncSession:
    """Yield a session for read-only routes."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
