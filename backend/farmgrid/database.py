"""Database engine, session factory, and declarative base.

A farm is stored as a single row whose plots live in a JSON document
column, so every mutation is one SELECT followed by one UPDATE inside
the request's session.

Side effects that must only happen once the write is durable (dropping
cached rollups) are queued with ``on_commit`` and run by ``get_db`` after
the commit succeeds.  A rollback discards them.
"""

from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from farmgrid.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=20,
    max_overflow=10,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

COMMIT_HOOKS = "on_commit"


class Base(DeclarativeBase):
    pass


def on_commit(session: AsyncSession, func: Callable[..., Awaitable], *args) -> None:
    """Queue ``func(*args)`` to run after this session's next commit."""
    session.info.setdefault(COMMIT_HOOKS, []).append((func, args))


def discard_commit_hooks(session: AsyncSession) -> None:
    session.info.pop(COMMIT_HOOKS, None)


async def run_commit_hooks(session: AsyncSession) -> None:
    for func, args in session.info.pop(COMMIT_HOOKS, []):
        await func(*args)


async def get_db() -> AsyncSession:
    """Yield a session; commit on success, roll back on any error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            discard_commit_hooks(session)
            raise
        await run_commit_hooks(session)
