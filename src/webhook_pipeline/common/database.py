from typing import Any, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from webhook_pipeline.common.config import DatabaseConfig


class Base(DeclarativeBase):
    pass


class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, config: DatabaseConfig):
        engine_kwargs: Dict[str, Any] = {"echo": config.echo}
        if config.url.startswith("sqlite") and ":memory:" in config.url:
            # A single shared connection, otherwise every session sees its own empty database
            engine_kwargs.update(
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )

        self.url = config.url
        self.engine = create_async_engine(config.url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_tables(self) -> None:
        # Import for side effects: table registration on Base.metadata
        from webhook_pipeline.common import schema  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.debug("Database engine disposed")
