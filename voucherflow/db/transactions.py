"""
Transaction Helper - Run a unit of work with retry on serialization conflicts.

Row-lock transactions can be aborted by PostgreSQL with a serialization
failure (40001) or a deadlock (40P01). Both are safe to retry from the top:
the aborted attempt wrote nothing.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from voucherflow.config import settings
from voucherflow.exceptions import ConcurrencyError
from voucherflow.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def _sqlstate(exc: DBAPIError) -> str | None:
    # asyncpg exposes .sqlstate, psycopg2 exposes .pgcode
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_retryable(exc: DBAPIError) -> bool:
    """True for serialization failures and deadlocks."""
    return _sqlstate(exc) in RETRYABLE_SQLSTATES


async def run_transaction(
    session: AsyncSession,
    work: Callable[[], Awaitable[T]],
    *,
    resource: str,
    max_attempts: int | None = None,
) -> T:
    """
    Run work() and commit, retrying the whole attempt on retryable conflicts.

    Any other exception rolls back and propagates unchanged.

    Raises:
        ConcurrencyError: Conflicts persisted through every attempt
    """
    attempts = max_attempts or settings.transaction_max_attempts

    for attempt in range(1, attempts + 1):
        try:
            result = await work()
            await session.commit()
            return result
        except DBAPIError as exc:
            await session.rollback()
            if not is_retryable(exc):
                raise
            logger.warning(
                "transaction_conflict_retry",
                resource=resource,
                attempt=attempt,
                max_attempts=attempts,
                sqlstate=_sqlstate(exc),
            )
        except BaseException:
            await session.rollback()
            raise

    logger.error("transaction_conflict_exhausted", resource=resource, attempts=attempts)
    raise ConcurrencyError(resource)
