"""Async database engine and session management for build metadata."""

from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


class Database:
    """One async engine plus its session factory."""

    def __init__(self, database_url: str):
        self.url = database_url
        kwargs = {}
        if "sqlite" in database_url:
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url.rstrip("/").endswith(":") or ":memory:" in database_url:
                # One shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = StaticPool
            else:
                _ensure_sqlite_dir(database_url)
        self.engine = create_async_engine(database_url, echo=False, **kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_tables(self) -> None:
        # Register every model on Base.metadata
        import tessera.models.fingerprint  # noqa: F401
        import tessera.models.progress  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def _ensure_sqlite_dir(database_url: str) -> None:
    path = database_url.split(":///", 1)[-1]
    if path:
        Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
