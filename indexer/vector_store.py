"""Qdrant-backed vector storage for memory chunks."""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple

from qdrant_client import AsyncQdrantClient
from qdrant_client import models

from config.settings import QdrantConfig
from services.shared.errors import VectorStoreError

logger = logging.getLogger(__name__)

SCROLL_BATCH = 1000


def match_filter(must: Optional[Dict[str, Any]] = None,
                 should: Optional[Sequence[Dict[str, Any]]] = None) -> Optional[models.Filter]:
    """Build a filter of exact payload matches.

    ``must`` maps keys to values that all have to match; each dict in
    ``should`` is one alternative, at least one of which has to match.
    """
    must_conditions = [
        models.FieldCondition(key=key, match=models.MatchValue(value=value))
        for key, value in (must or {}).items()
        if value is not None
    ]
    should_conditions = []
    for alternative in should or ():
        conditions = [
            models.FieldCondition(key=key, match=models.MatchValue(value=value))
            for key, value in alternative.items()
        ]
        if len(conditions) == 1:
            should_conditions.append(conditions[0])
        elif conditions:
            should_conditions.append(models.Filter(must=conditions))

    if not must_conditions and not should_conditions:
        return None
    return models.Filter(must=must_conditions or None, should=should_conditions or None)


class QdrantVectorStore:
    """Thin async wrapper around one Qdrant collection."""

    def __init__(self, config: Optional[QdrantConfig] = None, client: Optional[AsyncQdrantClient] = None):
        self.config = config or QdrantConfig()
        self.collection_name = self.config.collection_name
        self.client = client or self._build_client(self.config)
        self._ready = False
        self._lock = asyncio.Lock()

    @staticmethod
    def _build_client(config: QdrantConfig) -> AsyncQdrantClient:
        if config.location:
            return AsyncQdrantClient(location=config.location)
        return AsyncQdrantClient(url=config.url, api_key=config.api_key, timeout=config.timeout)

    async def _call(self, operation: str, awaitable: Awaitable) -> Any:
        try:
            return await awaitable
        except VectorStoreError:
            raise
        except Exception as e:
            logger.error(f"Qdrant {operation} failed on {self.collection_name}: {e}")
            raise VectorStoreError(str(e) or type(e).__name__, operation=operation) from e

    async def ensure_collection(self) -> None:
        """Create the collection if it does not exist yet."""
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            exists = await self._call(
                "collection_exists", self.client.collection_exists(self.collection_name)
            )
            if not exists:
                logger.info(f"Creating Qdrant collection {self.collection_name} ({self.config.vector_size} dims)")
                await self._call("create_collection", self.client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=models.VectorParams(
                        size=self.config.vector_size,
                        distance=models.Distance.COSINE,
                    ),
                ))
            self._ready = True

    async def upsert(self, points: List[models.PointStruct]) -> None:
        if not points:
            return
        await self._call("upsert", self.client.upsert(
            collection_name=self.collection_name,
            points=points,
            wait=True,
        ))

    async def search(self, vector: List[float], query_filter: Optional[models.Filter] = None,
                     limit: int = 5) -> List[models.ScoredPoint]:
        response = await self._call("search", self.client.query_points(
            collection_name=self.collection_name,
            query=vector,
            query_filter=query_filter,
            limit=limit,
            with_payload=True,
        ))
        return list(response.points)

    async def delete(self, query_filter: models.Filter) -> None:
        await self._call("delete", self.client.delete(
            collection_name=self.collection_name,
            points_selector=models.FilterSelector(filter=query_filter),
            wait=True,
        ))

    async def scroll(self, query_filter: Optional[models.Filter] = None, limit: int = SCROLL_BATCH,
                     offset: Any = None) -> Tuple[List[models.Record], Any]:
        return await self._call("scroll", self.client.scroll(
            collection_name=self.collection_name,
            scroll_filter=query_filter,
            limit=limit,
            offset=offset,
            with_payload=True,
            with_vectors=False,
        ))

    async def scroll_all(self, query_filter: Optional[models.Filter] = None) -> List[models.Record]:
        records: List[models.Record] = []
        offset = None
        while True:
            batch, offset = await self.scroll(query_filter, offset=offset)
            records.extend(batch)
            if offset is None:
                return records

    async def count(self, query_filter: Optional[models.Filter] = None) -> int:
        result = await self._call("count", self.client.count(
            collection_name=self.collection_name,
            count_filter=query_filter,
            exact=True,
        ))
        return result.count

    async def close(self) -> None:
        await self.client.close()
