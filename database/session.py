"""
Engine and transaction scopes for the pipeline database.

URLs in settings use plain scheme names; the async driver is filled in:
  postgresql:// | postgres://  → postgresql+asyncpg://
  mysql://                     → mysql+aiomysql://   (aiomysql installed separately)
  sqlite://                    → sqlite+aiosqlite://

Every get_session() block is one transaction: committed when the block
exits normally, rolled back when it raises. Components that must commit
together (a credit debit and the recipient rows it pays for) share one
session through session_scope().

    get_engine("sqlite:///./sms_pipeline.db")   # optional override, once
    await init_db()
    async with get_session() as db:
        await ledger.consume(tenant_id, 3, db=db)
        db.add_all(recipients)
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def _to_async_url(db_url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


def _engine_kwargs(db_url: str) -> dict:
    """Dialect-specific engine options."""
    options = {"echo": get_settings().debug}

    if db_url.startswith("sqlite"):
        # Concurrent claimers wait on the file lock rather than erroring
        options["connect_args"] = {"check_same_thread": False, "timeout": 30}
        return options

    # Workers, pollers and the scheduler share one pool per process
    options.update(
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
    return options


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Process-wide engine; ``db_url`` is only honoured on first creation."""
    global _engine
    if _engine is None:
        url = _to_async_url(db_url or get_settings().database.url)
        _engine = create_async_engine(url, **_engine_kwargs(url))
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_redact(str(_engine.url)))
    return _engine


def _factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        # Rows stay readable after commit; callers hand them to other sessions
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on success, rollback on error."""
    async with _factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope(db: Optional[AsyncSession] = None) -> AsyncGenerator[AsyncSession, None]:
    """Join the caller's transaction when given one, otherwise open a new one."""
    if db is not None:
        yield db
        return
    async with get_session() as session:
        yield session


async def init_db() -> None:
    """Create missing tables."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
