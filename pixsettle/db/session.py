from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pixsettle.config import settings
from pixsettle.db.base import Base


_engine: AsyncEngine | None = None
_SessionLocal: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {}
    # MySQL drops idle connections after wait_timeout; ping and recycle before that
    return {"pool_pre_ping": True, "pool_recycle": 1800}


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        if not settings.db_url:
            raise RuntimeError("DB_URL is not configured")
        _engine = create_async_engine(settings.db_url, **_engine_options(settings.db_url))
    return _engine


def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = make_session_maker(get_engine())
    return _SessionLocal


@asynccontextmanager
async def session_scope(session_maker: async_sessionmaker[AsyncSession] | None = None) -> AsyncIterator[AsyncSession]:
    """Yield a session; roll back on error. Callers commit explicitly."""
    SessionLocal = session_maker or get_session_maker()
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_models(engine: AsyncEngine | None = None) -> None:
    import pixsettle.db.models  # noqa: F401  register tables

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _SessionLocal = None
