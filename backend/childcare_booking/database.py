from __future__ import annotations

import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, DisconnectionError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings
from .models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Owns the async engine and session factory for one process.

    Built by the application lifespan and handed to whoever needs a store; nothing
    connects at import time. `connect()` retries the initial handshake, and
    `pool_pre_ping` replaces connections the server dropped while idle.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("database is not connected")
        return self._engine

    @property
    def sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        if self._sessionmaker is None:
            raise RuntimeError("database is not connected")
        return self._sessionmaker

    async def connect(self) -> None:
        if self._engine is not None:
            return
        engine = create_async_engine(
            self._settings.database_url,
            echo=self._settings.echo_sql,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        attempts = self._settings.db_connect_attempts
        for attempt in range(1, attempts + 1):
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                break
            except (DBAPIError, DisconnectionError, OSError) as exc:
                if attempt == attempts:
                    await engine.dispose()
                    raise
                delay_ms = self._settings.db_connect_delay_ms * 2 ** (attempt - 1)
                logger.warning("database connect attempt %d/%d failed (%s), retrying in %dms", attempt, attempts, exc, delay_ms)
                await asyncio.sleep(delay_ms / 1000)
        self._engine = engine
        self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
        logger.info("database connected")

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("database disposed")
