"""Database configuration and engine factory for memfoundry.

The relational store holds projects, indexing jobs and the keyword search
tables. SQLite is the development default; any SQLAlchemy URL works.
"""

import asyncio
import os
import logging
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.shared.models import Base

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///memfoundry.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Log emitted SQL")

    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Maximum pool overflow")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_in_memory(self) -> bool:
        return self.url in ("sqlite://", "sqlite:///:memory:")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        return cls(
            url=os.getenv('MEMFOUNDRY_DB_URL', 'sqlite:///memfoundry.db'),
            echo=os.getenv('MEMFOUNDRY_DB_ECHO', 'false').lower() == 'true',
            pool_size=int(os.getenv('DB_POOL_SIZE', '10')),
            max_overflow=int(os.getenv('DB_MAX_OVERFLOW', '20')),
            pool_timeout=int(os.getenv('DB_POOL_TIMEOUT', '30'))
        )


def build_engine(config: DatabaseConfig) -> Engine:
    if config.is_sqlite:
        kwargs = {"connect_args": {"check_same_thread": False}}
        if config.is_in_memory:
            # One shared connection, otherwise every session sees an empty database.
            kwargs["poolclass"] = StaticPool
        engine = create_engine(config.url, echo=config.echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


class DatabaseFactory:
    """Process-wide holder of the engine and session factory."""

    _instance: Optional['DatabaseFactory'] = None
    _engine: Optional[Engine] = None
    _session_factory: Optional[sessionmaker] = None
    _config: Optional[DatabaseConfig] = None

    def __new__(cls) -> 'DatabaseFactory':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self, config: Optional[DatabaseConfig] = None) -> sessionmaker:
        """Create the engine and make sure the tables exist."""
        if config is None:
            config = DatabaseConfig.from_env()

        self._config = config
        self._engine = build_engine(config)
        self._session_factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, Base.metadata.create_all, self._engine)

        logger.info(f"Database initialized: {self._engine.url.render_as_string(hide_password=True)}")
        return self._session_factory

    async def close(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database engine disposed")

    def get_session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._session_factory

    def get_engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._engine

    def get_config(self) -> DatabaseConfig:
        if self._config is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._config


db_factory = DatabaseFactory()


async def initialize_database(config: Optional[DatabaseConfig] = None) -> sessionmaker:
    return await db_factory.initialize(config)


def get_session_factory() -> sessionmaker:
    return db_factory.get_session_factory()


async def close_database():
    await db_factory.close()
