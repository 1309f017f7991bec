"""
Database Session Management - Async SQLAlchemy engines and request sessions.

All settlement writes (reservations, transitions, redemptions) go through the
primary. The read engine serves health and status probes; without a replica
configured it is the primary engine itself.

A request session that ends with an exception is rolled back before it is
returned to the pool, so row locks taken by a failed request are released
immediately rather than when the connection is recycled.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from structlog import get_logger

from voucherflow.config import settings
from voucherflow.observability.tracing import instrument_sqlalchemy

logger = get_logger(__name__)

_engines: dict[str, AsyncEngine] = {}
_factories: dict[str, async_sessionmaker[AsyncSession]] = {}

WRITE = "write"
READ = "read"


def _create_engine(url: str) -> AsyncEngine:
    engine = create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        # asyncpg bounds every statement, so a stuck row lock surfaces as an error
        connect_args={"command_timeout": settings.database_command_timeout},
        echo=settings.log_level.upper() == "DEBUG",
    )
    instrument_sqlalchemy(engine)
    return engine


def get_engine(role: str = WRITE) -> AsyncEngine:
    """Engine for a role, created on first use."""
    if role not in _engines:
        if role == READ and not settings.database_read_url:
            _engines[READ] = get_engine(WRITE)
        else:
            url = settings.database_url if role == WRITE else settings.read_database_url
            _engines[role] = _create_engine(url)
    return _engines[role]


def get_session_factory(role: str = WRITE) -> async_sessionmaker[AsyncSession]:
    if role not in _factories:
        # Attributes stay loaded after commit; routes serialize them afterwards
        _factories[role] = async_sessionmaker(
            get_engine(role), class_=AsyncSession, expire_on_commit=False
        )
    return _factories[role]


@asynccontextmanager
async def session_scope(role: str = WRITE) -> AsyncIterator[AsyncSession]:
    """Session that is rolled back if the block raises."""
    async with get_session_factory(role)() as session:
        try:
            yield session
        except Exception:
            if session.in_transaction():
                await session.rollback()
            raise


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a primary database session.

    Usage:
        @router.post("/purchases/{purchase_id}/confirm")
        async def confirm(purchase_id: UUID, db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with session_scope(WRITE) as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for a read-only session (replica when configured)."""
    async with session_scope(READ) as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (graceful shutdown)."""
    disposed: set[int] = set()
    for engine in _engines.values():
        if id(engine) not in disposed:
            await engine.dispose()
            disposed.add(id(engine))
    logger.info("database_engines_closed", count=len(disposed))
    _engines.clear()
    _factories.clear()
