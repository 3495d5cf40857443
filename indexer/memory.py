"""Memory Gateway: scope-aware ingest, retrieval and deletion of embedded chunks.

Every stored point carries a ``project_id`` payload field that is either
``"global"`` or the id of the owning project. Reads always filter on it, so a
project's vectors never surface in another project's results.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from qdrant_client import models

from observability.logging import log_performance
from observability.prometheus_metrics import vectors_written
from parsing import ParserRegistry, SemanticChunk, default_registry

from .embeddings import EmbeddingProvider
from .vector_store import QdrantVectorStore, match_filter

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = 'global'
RETRIEVE_LIMIT = 5


def resolve_scope(project_id: Optional[str] = None, scope: Optional[str] = None) -> str:
    """Return the effective project id for a write or a single-scope read."""
    if scope == GLOBAL_SCOPE or (not project_id and not scope):
        return GLOBAL_SCOPE
    return project_id or GLOBAL_SCOPE


@dataclass
class IngestResult:
    success: bool
    vectors_added: int
    project_id: str
    scope: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeleteResult:
    success: bool
    project_id: str
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RetrievedMemory:
    id: str
    score: float
    content: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> Optional[str]:
        return self.payload.get('source')

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _PendingChunk:
    content: str
    chunk: Optional[SemanticChunk] = None


def _chunk_payload(chunk: SemanticChunk) -> Dict[str, Any]:
    meta = chunk.metadata
    return {
        'chunk_type': chunk.type.value,
        'chunk_name': chunk.name,
        'start_line': chunk.start_line,
        'end_line': chunk.end_line,
        'dependencies': list(meta.dependencies),
        'exports': list(meta.exports),
        'parent': meta.parent,
        'visibility': meta.visibility.value if meta.visibility else None,
        'is_async': meta.is_async,
        'is_static': meta.is_static,
        'parameters': list(meta.parameters),
        'decorators': list(meta.decorators),
    }


class MemoryGateway:
    """Parses, embeds and stores content; answers scoped similarity queries."""

    def __init__(self, embedder: EmbeddingProvider, store: QdrantVectorStore,
                 parsers: Optional[ParserRegistry] = None):
        self.embedder = embedder
        self.store = store
        self.parsers = parsers or default_registry

    resolve_scope = staticmethod(resolve_scope)

    def _split(self, content: str, source: str, language: Optional[str]) -> List[_PendingChunk]:
        result = self.parsers.parse(content, source, language)
        if result.success and result.chunks:
            return [_PendingChunk(chunk.content, chunk) for chunk in result.chunks]

        logger.warning(f"Parsing failed for {source}, using paragraph chunking: {result.error}")
        pieces = [piece for piece in content.split('\n\n') if piece.strip()]
        if not pieces:
            pieces = [content]
        return [_PendingChunk(piece) for piece in pieces]

    @log_performance(threshold_ms=5000.0)
    async def ingest(self, content: str, source: str, content_type: str = 'code',
                     language: Optional[str] = None, project_id: Optional[str] = None,
                     scope: Optional[str] = None) -> IngestResult:
        await self.store.ensure_collection()
        effective = resolve_scope(project_id, scope)
        scope_tag = GLOBAL_SCOPE if effective == GLOBAL_SCOPE else 'project'

        points = []
        for pending in self._split(content, source, language):
            if not pending.content.strip():
                continue
            vector = await self.embedder.embed(pending.content)
            payload = {
                'content': pending.content,
                'source': source,
                'type': content_type,
                'language': language,
                'project_id': effective,
                'scope': scope_tag,
            }
            if pending.chunk is not None:
                payload.update(_chunk_payload(pending.chunk))
            points.append(models.PointStruct(id=str(uuid.uuid4()), vector=vector, payload=payload))

        await self.store.upsert(points)
        if points:
            vectors_written.inc(len(points))
        logger.debug(f"Ingested {len(points)} vectors from {source} into {effective}")
        return IngestResult(success=True, vectors_added=len(points), project_id=effective, scope=scope_tag)

    def _retrieve_filter(self, filters: Optional[Dict[str, Any]], project_id: Optional[str],
                         scope: Optional[str]) -> models.Filter:
        custom = dict(filters or {})
        if scope == 'all' and project_id:
            return match_filter(
                must=custom,
                should=[{'project_id': GLOBAL_SCOPE}, {'project_id': project_id}],
            )
        if scope == 'all':
            custom['project_id'] = GLOBAL_SCOPE
        else:
            custom['project_id'] = resolve_scope(project_id, scope)
        return match_filter(must=custom)

    async def retrieve(self, query: str, filters: Optional[Dict[str, Any]] = None,
                       project_id: Optional[str] = None, scope: Optional[str] = None,
                       limit: int = RETRIEVE_LIMIT) -> List[RetrievedMemory]:
        await self.store.ensure_collection()
        vector = await self.embedder.embed(query)
        hits = await self.store.search(vector, self._retrieve_filter(filters, project_id, scope), limit)
        return [
            RetrievedMemory(
                id=str(hit.id),
                score=float(hit.score),
                content=(hit.payload or {}).get('content', ''),
                payload=dict(hit.payload or {}),
            )
            for hit in hits
        ]

    async def delete_source(self, source: str, project_id: Optional[str] = None,
                            scope: Optional[str] = None) -> DeleteResult:
        await self.store.ensure_collection()
        effective = resolve_scope(project_id, scope)
        logger.info(f"Deleting vectors of {source} in {effective}")
        await self.store.delete(match_filter(must={'source': source, 'project_id': effective}))
        return DeleteResult(success=True, project_id=effective, source=source)

    async def delete_all_project_vectors(self, project_id: str) -> Dict[str, Any]:
        await self.store.ensure_collection()
        project_filter = match_filter(must={'project_id': project_id})
        deleted = await self.store.count(project_filter)
        await self.store.delete(project_filter)
        logger.info(f"Deleted {deleted} vectors of project {project_id}")
        return {'success': True, 'deleted_count': deleted}

    async def list_projects(self) -> List[str]:
        await self.store.ensure_collection()
        records = await self.store.scroll_all()
        return sorted({
            record.payload['project_id']
            for record in records
            if record.payload and record.payload.get('project_id')
        })

    async def close(self) -> None:
        await self.embedder.close()
        await self.store.close()
