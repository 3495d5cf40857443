"""Service settings for memfoundry.

Each concern has its own pydantic model with a ``from_env`` constructor;
``Settings`` bundles them and ``get_settings`` caches one instance per
process.
"""

import os
from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, Field

from .database import DatabaseConfig


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class QdrantConfig(BaseModel):
    """Vector store connection."""
    url: Optional[str] = Field(default="http://localhost:6333", description="Qdrant HTTP endpoint")
    api_key: Optional[str] = None
    location: Optional[str] = Field(default=None, description="Local mode, e.g. ':memory:'; overrides url")
    collection_name: str = "memfoundry_memory"
    vector_size: int = 768
    timeout: int = 30

    @classmethod
    def from_env(cls) -> 'QdrantConfig':
        return cls(
            url=os.getenv('QDRANT_URL', 'http://localhost:6333'),
            api_key=os.getenv('QDRANT_API_KEY') or None,
            location=os.getenv('QDRANT_LOCATION') or None,
            collection_name=os.getenv('QDRANT_COLLECTION', 'memfoundry_memory'),
            vector_size=_env_int('EMBEDDING_DIMENSIONS', 768),
            timeout=_env_int('QDRANT_TIMEOUT', 30),
        )


class EmbeddingConfig(BaseModel):
    """Ollama embedding endpoint."""
    ollama_url: str = "http://localhost:11434"
    model: str = "nomic-embed-text"
    timeout: float = 60.0
    dimensions: int = 768

    @classmethod
    def from_env(cls) -> 'EmbeddingConfig':
        return cls(
            ollama_url=os.getenv('OLLAMA_URL', 'http://localhost:11434').rstrip('/'),
            model=os.getenv('EMBEDDING_MODEL', 'nomic-embed-text'),
            timeout=_env_float('EMBEDDING_TIMEOUT', 60.0),
            dimensions=_env_int('EMBEDDING_DIMENSIONS', 768),
        )


class RedisConfig(BaseModel):
    url: str = "redis://localhost:6379/0"
    scheduler_db: int = 1
    key_prefix: str = "memfoundry"

    @classmethod
    def from_env(cls) -> 'RedisConfig':
        return cls(
            url=os.getenv('REDIS_URL', 'redis://localhost:6379/0'),
            scheduler_db=_env_int('REDIS_SCHEDULER_DB', 1),
            key_prefix=os.getenv('REDIS_KEY_PREFIX', 'memfoundry'),
        )


class IndexingConfig(BaseModel):
    """Working copies, size limits and git timeouts (seconds)."""
    work_dir: Optional[str] = Field(default=None, description="Parent directory for working copies; system temp when unset")
    max_file_size: int = 1024 * 1024
    clone_depth: int = 1
    clone_timeout: float = 300.0
    fetch_timeout: float = 300.0
    pull_timeout: float = 300.0
    checkout_timeout: float = 60.0
    command_timeout: float = 60.0
    keep_working_copies: bool = Field(default=False, description="Keep incremental clones between runs for reuse")

    @classmethod
    def from_env(cls) -> 'IndexingConfig':
        return cls(
            work_dir=os.getenv('INDEXING_WORK_DIR') or None,
            max_file_size=_env_int('INDEXING_MAX_FILE_SIZE', 1024 * 1024),
            clone_depth=_env_int('INDEXING_CLONE_DEPTH', 1),
            clone_timeout=_env_float('GIT_CLONE_TIMEOUT', 300.0),
            fetch_timeout=_env_float('GIT_FETCH_TIMEOUT', 300.0),
            pull_timeout=_env_float('GIT_PULL_TIMEOUT', 300.0),
            checkout_timeout=_env_float('GIT_CHECKOUT_TIMEOUT', 60.0),
            command_timeout=_env_float('GIT_COMMAND_TIMEOUT', 60.0),
            keep_working_copies=os.getenv('INDEXING_KEEP_WORKING_COPIES', 'false').lower() == 'true',
        )


class SearchConfig(BaseModel):
    cache_ttl: int = 1800
    max_cache_age: int = 86400
    default_limit: int = 10
    max_limit: int = 50
    suggestion_limit: int = 5
    memory_cache_size: int = 1000
    boost_weights: Dict[str, float] = Field(default_factory=lambda: {
        'semantic': 0.6,
        'keyword': 0.3,
        'popularity': 0.05,
        'freshness': 0.05,
    })

    @classmethod
    def from_env(cls) -> 'SearchConfig':
        return cls(
            cache_ttl=_env_int('SEARCH_CACHE_TTL', 1800),
            max_cache_age=_env_int('SEARCH_MAX_CACHE_AGE', 86400),
            default_limit=_env_int('SEARCH_DEFAULT_LIMIT', 10),
            max_limit=_env_int('SEARCH_MAX_LIMIT', 50),
        )


class QueueConfig(BaseModel):
    """Job queue retention, retry and worker settings."""
    concurrency: Dict[str, int] = Field(default_factory=lambda: {
        'indexing': 2,
        'scheduled-indexing': 1,
        'cleanup': 1,
    })
    attempts: int = 3
    backoff_ms: int = 2000
    remove_on_complete: int = 50
    remove_on_fail: int = 20
    stalled_after: float = 600.0
    cleanup_delay: float = 300.0
    poll_interval: float = 1.0
    use_redis: bool = True

    @classmethod
    def from_env(cls) -> 'QueueConfig':
        return cls(
            concurrency={
                'indexing': _env_int('INDEXING_CONCURRENCY', 2),
                'scheduled-indexing': _env_int('SCHEDULED_INDEXING_CONCURRENCY', 1),
                'cleanup': _env_int('CLEANUP_CONCURRENCY', 1),
            },
            attempts=_env_int('QUEUE_ATTEMPTS', 3),
            backoff_ms=_env_int('QUEUE_BACKOFF_MS', 2000),
            stalled_after=_env_float('QUEUE_STALLED_AFTER', 600.0),
            poll_interval=_env_float('QUEUE_POLL_INTERVAL', 1.0),
            use_redis=os.getenv('QUEUE_BACKEND', 'redis').lower() == 'redis',
        )


class Settings(BaseModel):
    service_name: str = "memfoundry"
    log_level: str = "INFO"
    log_json: bool = False
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    qdrant: QdrantConfig = Field(default_factory=QdrantConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            service_name=os.getenv('SERVICE_NAME', 'memfoundry'),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_json=os.getenv('LOG_FORMAT', 'text').lower() == 'json',
            database=DatabaseConfig.from_env(),
            qdrant=QdrantConfig.from_env(),
            embedding=EmbeddingConfig.from_env(),
            redis=RedisConfig.from_env(),
            indexing=IndexingConfig.from_env(),
            search=SearchConfig.from_env(),
            queue=QueueConfig.from_env(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
