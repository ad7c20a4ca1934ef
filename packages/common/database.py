"""
Database session management for SQLAlchemy with async support

One production database plus any number of named environment databases
(isolated copies used for testing). Callers select the backing store with a
StorageContext; the HTTP layer resolves it per request and the import service
carries it explicitly into background tasks.
"""
import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncGenerator, Dict, Optional

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from packages.common.config import Settings, get_settings

logger = structlog.get_logger()

PROD_ENV = "prod"

metadata = MetaData()

entities_table = Table(
    "entities",
    metadata,
    Column("notion_id", Text, primary_key=True),
    Column("name", Text, nullable=False),
    Column("type", Text),
    Column("aliases", Text),  # comma separated
    Column("default_transaction_type", Text),
    Column("notes", Text),
    Column("last_edited_time", Text, nullable=False),
)

transactions_table = Table(
    "transactions",
    metadata,
    Column("notion_id", Text, primary_key=True),
    Column("description", Text, nullable=False),
    Column("account", Text, nullable=False),
    Column("amount", Float, nullable=False),
    Column("date", Text, nullable=False),
    Column("type", Text, nullable=False),
    Column("entity_id", Text),
    Column("entity_name", Text),
    Column("location", Text),
    Column("online", Boolean, nullable=False, default=False),
    Column("raw_row", Text),
    Column("checksum", Text),
    Column("last_edited_time", Text, nullable=False),
    Index("idx_transactions_account_checksum", "account", "checksum"),
)

ai_usage_table = Table(
    "ai_usage",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("description", Text, nullable=False),
    Column("entity_name", Text),
    Column("category", Text),
    Column("input_tokens", Integer, nullable=False),
    Column("output_tokens", Integer, nullable=False),
    Column("cost_usd", Float, nullable=False),
    Column("cached", Boolean, nullable=False, default=False),
    Column("import_batch_id", Text),
    Column("created_at", Text, nullable=False),
    Index("idx_ai_usage_created_at", "created_at"),
    Index("idx_ai_usage_batch", "import_batch_id"),
)


@dataclass(frozen=True)
class StorageContext:
    """Names the backing store for a unit of work (None or "prod" = production)"""
    env: Optional[str] = None

    @property
    def is_prod(self) -> bool:
        return self.env in (None, PROD_ENV)

    @property
    def label(self) -> str:
        return PROD_ENV if self.is_prod else self.env


# Set by the env middleware for the duration of one request. Background tasks
# never read this; they receive the StorageContext captured at session start.
current_storage: ContextVar[StorageContext] = ContextVar(
    "current_storage", default=StorageContext()
)


class UnknownEnvironmentError(Exception):
    """Raised when a named environment has no database"""

    def __init__(self, env: str):
        super().__init__(f"Environment '{env}' not found")
        self.env = env


class DatabaseSessionManager:
    """Manage database connections and sessions"""

    def __init__(self):
        self._engine = None
        self._sessionmaker = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        """Check if session manager is initialized"""
        return self._sessionmaker is not None

    async def init(self, database_url: str, **engine_kwargs):
        """Initialize database engine and session maker, creating tables"""
        if self.initialized:
            return

        async with self._init_lock:  # Double-checked locking
            if self.initialized:
                return

            # Convert postgresql:// to postgresql+asyncpg://
            if database_url.startswith("postgresql://"):
                database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

            if database_url.startswith("sqlite"):
                db_path = make_url(database_url).database
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

            default_kwargs = {"echo": engine_kwargs.get("echo", False)}
            if not database_url.startswith("sqlite"):
                default_kwargs.update({
                    "pool_size": 20,
                    "max_overflow": 10,
                    "pool_pre_ping": True,
                    "pool_recycle": 3600,
                })
            default_kwargs.update(engine_kwargs)

            engine = create_async_engine(database_url, **default_kwargs)
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)

            self._engine = engine
            self._sessionmaker = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )

    async def close(self):
        """Close database connections"""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Context manager for database sessions"""
        if not self.initialized:
            raise RuntimeError("DatabaseSessionManager not initialized")

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class DatabaseRouter:
    """
    Route sessions to the production database or a named environment database.

    Environment databases are opened lazily on first use and cached until close().
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._prod = DatabaseSessionManager()
        self._envs: Dict[str, DatabaseSessionManager] = {}
        self._lock = asyncio.Lock()

    async def init(self):
        await self._prod.init(self.settings.database_url)
        logger.info("database_initialized", env=PROD_ENV)

    def env_exists(self, env: str) -> bool:
        return self.settings.env_database_path(env).exists()

    async def _manager_for(self, storage: StorageContext) -> DatabaseSessionManager:
        if storage.is_prod:
            if not self._prod.initialized:
                await self.init()
            return self._prod

        manager = self._envs.get(storage.env)
        if manager is not None:
            return manager

        async with self._lock:
            manager = self._envs.get(storage.env)
            if manager is None:
                if not self.env_exists(storage.env):
                    raise UnknownEnvironmentError(storage.env)
                manager = DatabaseSessionManager()
                await manager.init(self.settings.env_database_url(storage.env))
                self._envs[storage.env] = manager
                logger.info("database_initialized", env=storage.env)
        return manager

    @asynccontextmanager
    async def session(self, storage: StorageContext) -> AsyncGenerator[AsyncSession, None]:
        """Open a session against the store named by `storage`"""
        manager = await self._manager_for(storage)
        async with manager.session() as session:
            yield session

    async def close(self):
        await self._prod.close()
        for manager in self._envs.values():
            await manager.close()
        self._envs.clear()
