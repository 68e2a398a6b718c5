from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import Settings, get_settings

_engine: AsyncEngine | None = None
_SessionLocal: async_sessionmaker[AsyncSession] | None = None


def init_engine(database_url: str | None = None, settings: Settings | None = None) -> None:
    global _engine, _SessionLocal
    settings = settings or get_settings()
    database_url = database_url or settings.async_database_url
    if not database_url:
        return
    engine_kwargs: dict[str, object] = {"pool_pre_ping": True, "echo": settings.DB_ECHO}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
        )
    _engine = create_async_engine(database_url, **engine_kwargs)
    _SessionLocal = async_sessionmaker(bind=_engine, expire_on_commit=False, autoflush=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _SessionLocal is None:  # lazy init
        init_engine()
    if _SessionLocal is None:
        raise RuntimeError("Database not configured. Set COMMERCE_DATABASE_URL.")
    return _SessionLocal
