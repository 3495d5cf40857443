"""Shared fixtures.

Everything runs in-process: a SQLite file per test, Qdrant in local
``:memory:`` mode, the in-memory queue backend and a deterministic embedder.
"""
import hashlib
import re
from typing import List

import numpy as np
import pytest
import pytest_asyncio
from sqlalchemy.orm import sessionmaker

from config.database import DatabaseConfig, build_engine
from config.settings import QdrantConfig, QueueConfig
from indexer.embeddings import EmbeddingProvider
from indexer.memory import MemoryGateway
from indexer.vector_store import QdrantVectorStore
from server.jobs import MemoryQueueBackend, QueueManager
from services.shared.models import Base
from services.shared.projects import ProjectStore
from services.shared.search_store import SearchStore

pytest_plugins = ["pytest_asyncio"]

TEST_DIMENSIONS = 32
TOKEN_RE = re.compile(r'\w+')


class HashingEmbedder(EmbeddingProvider):
    """Bag-of-words feature hashing; texts sharing words land close together."""

    def __init__(self, dimensions: int = TEST_DIMENSIONS):
        self.dimensions = dimensions
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        vector = np.zeros(self.dimensions, dtype=np.float32)
        vector[0] = 0.01
        for token in TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode('utf-8')).digest()
            vector[digest[0] % self.dimensions] += 1.0
        return vector.tolist()


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(DatabaseConfig(url=f"sqlite:///{tmp_path / 'memfoundry.db'}"))
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def project_store(session_factory):
    return ProjectStore(session_factory)


@pytest.fixture
def search_store(session_factory):
    return SearchStore(session_factory)


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def vector_store():
    return QdrantVectorStore(QdrantConfig(
        location=':memory:',
        collection_name='test_memory',
        vector_size=TEST_DIMENSIONS,
    ))


@pytest.fixture
def gateway(embedder, vector_store):
    return MemoryGateway(embedder, vector_store)


@pytest.fixture
def queue_config():
    return QueueConfig(use_redis=False, backoff_ms=10, stalled_after=600.0, poll_interval=0.01)


@pytest_asyncio.fixture
async def queue_manager(queue_config):
    manager = QueueManager(queue_config, backend=MemoryQueueBackend())
    await manager.initialize(start_scheduler=False)
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def project(project_store):
    return await project_store.create_project('demo', 'https://example.com/demo.git', project_id='p1')
