"""Key/value storage tiers.

The session tier is a plain in-memory mapping that lives for one logical
session. The durable tier stores entries in a SQL database through the
SQLAlchemy async engine (aiosqlite by default, asyncpg for PostgreSQL),
namespaced per account.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Dict, List, Optional, Protocol

from sqlalchemy import DateTime, String, Text, delete, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import config
from .logging_utils import get_logger
from .models import utcnow

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Minimal async key/value interface shared by all local tiers."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def clear(self) -> None:
        ...


class InMemoryKeyValueStore:
    """Session tier: fast reads, gone when the session ends."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    async def keys(self) -> List[str]:
        return list(self._data)


class Base(DeclarativeBase):
    """Base class for durable-tier tables."""

    pass


class StoredEntry(Base):
    """One key/value entry in the durable tier.

    Attributes:
        namespace: Account the entry belongs to.
        key: Entry key within the namespace.
        value: Serialized JSON payload.
        updated_at: Last write time.
    """

    __tablename__ = "kv_entries"

    namespace: Mapped[str] = mapped_column(String(128), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<StoredEntry(namespace={self.namespace!r}, key={self.key!r})>"


def normalize_database_url(database_url: str) -> str:
    """Add the async driver to bare sqlite/postgresql URLs.

    Raises:
        ValueError: If the URL is empty.
    """
    if not database_url:
        raise ValueError(
            "DURABLE_STORE_URL is not set. "
            "Expected format: sqlite+aiosqlite:///path/to/file.db"
        )
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


class SqlKeyValueStore:
    """Durable tier backed by a SQLAlchemy async engine."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        namespace: str = "default",
        engine: Optional[AsyncEngine] = None,
    ):
        self.database_url = normalize_database_url(
            database_url or config.DURABLE_STORE_URL
        )
        self.namespace = namespace
        self._engine = engine
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._tables_ready = False

    async def get_engine(self) -> AsyncEngine:
        """Get or create the async engine."""
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, echo=False)
            logger.info("Durable store engine created")
        return self._engine

    async def get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            engine = await self.get_engine()
            self._session_factory = async_sessionmaker(
                engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    async def create_tables(self) -> None:
        """Create the durable-tier table if it does not exist."""
        if self._tables_ready:
            return
        engine = await self.get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._tables_ready = True

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on exception."""
        await self.create_tables()
        session_factory = await self.get_session_factory()
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def get(self, key: str) -> Optional[str]:
        async with self.session() as session:
            entry = await session.get(StoredEntry, (self.namespace, key))
            return entry.value if entry is not None else None

    async def set(self, key: str, value: str) -> None:
        async with self.session() as session:
            entry = await session.get(StoredEntry, (self.namespace, key))
            if entry is None:
                session.add(
                    StoredEntry(namespace=self.namespace, key=key, value=value)
                )
            else:
                entry.value = value
                entry.updated_at = utcnow()

    async def delete(self, key: str) -> None:
        async with self.session() as session:
            await session.execute(
                delete(StoredEntry).where(
                    StoredEntry.namespace == self.namespace, StoredEntry.key == key
                )
            )

    async def clear(self) -> None:
        """Delete every entry in this store's namespace."""
        async with self.session() as session:
            await session.execute(
                delete(StoredEntry).where(StoredEntry.namespace == self.namespace)
            )

    async def keys(self) -> List[str]:
        async with self.session() as session:
            result = await session.execute(
                select(StoredEntry.key).where(StoredEntry.namespace == self.namespace)
            )
            return list(result.scalars())

    async def close(self) -> None:
        """Dispose the engine and release connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._tables_ready = False
            logger.info("Durable store engine closed")
