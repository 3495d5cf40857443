"""Configuration module for memfoundry.

Provides configuration for the relational store, vector store, embeddings,
Redis, indexing, search and the job queue.
"""

from .database import (
    DatabaseConfig,
    DatabaseFactory,
    build_engine,
    db_factory,
    get_session_factory,
    initialize_database,
    close_database
)
from .settings import (
    QdrantConfig,
    EmbeddingConfig,
    RedisConfig,
    IndexingConfig,
    SearchConfig,
    QueueConfig,
    Settings,
    get_settings
)

__all__ = [
    'DatabaseConfig',
    'DatabaseFactory',
    'build_engine',
    'db_factory',
    'get_session_factory',
    'initialize_database',
    'close_database',
    'QdrantConfig',
    'EmbeddingConfig',
    'RedisConfig',
    'IndexingConfig',
    'SearchConfig',
    'QueueConfig',
    'Settings',
    'get_settings'
]
