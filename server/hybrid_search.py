"""Hybrid search: semantic and keyword legs fused into one ranking.

Both legs run concurrently. Results that refer to the same text (same
content hash) are merged so that one result carries both scores, then every
result is ranked by a weighted sum of its semantic, keyword, popularity and
freshness scores.
"""

import asyncio
import hashlib
import logging
import re
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from config.settings import SearchConfig
from indexer.memory import GLOBAL_SCOPE, MemoryGateway
from observability.logging import log_performance
from observability.prometheus_metrics import record_cache_event, record_search_metrics
from services.shared.errors import InvalidSearchRequest
from services.shared.search_store import SearchStore, freshness_score
from server.search_cache import CacheStatus, SearchResultsCache, generate_query_hash

logger = logging.getLogger(__name__)

SEARCH_TYPES = ('semantic', 'keyword', 'hybrid')


class Range(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None


class DateRange(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class SearchFilters(BaseModel):
    content_type: Optional[List[str]] = None
    source_type: Optional[List[str]] = None
    language: Optional[List[str]] = None
    complexity: Optional[List[str]] = None
    freshness: Optional[Range] = None
    word_count: Optional[Range] = None
    date_range: Optional[DateRange] = None


class BoostFactors(BaseModel):
    semantic: float = 0.6
    keyword: float = 0.3
    popularity: float = 0.05
    freshness: float = 0.05


class SearchOptions(BaseModel):
    search_type: str = 'hybrid'
    limit: Optional[int] = None
    offset: int = 0
    boost_factors: Optional[BoostFactors] = None
    project_id: Optional[str] = Field(default=None, description="Also search this project's vectors")
    session_id: Optional[str] = None


class ResultSource(BaseModel):
    url: str = ''
    type: str = 'vector'
    path: Optional[str] = None


class ResultMetadata(BaseModel):
    content_type: str = 'documentation'
    language: Optional[str] = None
    complexity: str = 'medium'
    word_count: int = 0
    freshness: float = 1.0
    popularity: int = 0


class ResultScores(BaseModel):
    semantic: Optional[float] = None
    keyword: Optional[float] = None
    popularity: Optional[float] = None
    freshness: Optional[float] = None
    combined: float = 0.0


class HybridSearchResult(BaseModel):
    id: str
    content: str
    title: Optional[str] = None
    summary: Optional[str] = None
    source: ResultSource = Field(default_factory=ResultSource)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    scores: ResultScores = Field(default_factory=ResultScores)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FacetValue(BaseModel):
    value: str
    count: int


class Facets(BaseModel):
    content_types: List[FacetValue] = Field(default_factory=list)
    source_types: List[FacetValue] = Field(default_factory=list)
    languages: List[FacetValue] = Field(default_factory=list)
    complexities: List[FacetValue] = Field(default_factory=list)


class SearchResponse(BaseModel):
    query: str
    search_type: str
    total_results: int
    search_time: int
    cached: bool = False
    results: List[HybridSearchResult] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    facets: Facets = Field(default_factory=Facets)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.strip().encode('utf-8')).hexdigest()[:16]


def keyword_score(query: str, content: str, title: Optional[str] = None) -> float:
    """Term-overlap relevance in [0, 1]; title hits weigh 3, content hits 0.5 each up to 2."""
    terms = query.lower().split()
    if not terms:
        return 0.0
    content_lower = content.lower()
    title_lower = (title or '').lower()

    score = 0.0
    for term in terms:
        if len(term) < 2:
            continue
        if term in title_lower:
            score += 3
        matches = len(re.findall(re.escape(term), content_lower))
        score += min(matches * 0.5, 2)
    return min(score / (len(terms) * 3), 1.0)


def calculate_freshness(created_at: Optional[datetime] = None) -> float:
    return freshness_score(created_at)


def calculate_hybrid_score(scores: ResultScores, boosts: BoostFactors) -> float:
    return (
        (scores.semantic or 0) * boosts.semantic
        + (scores.keyword or 0) * boosts.keyword
        + (scores.popularity or 0) * boosts.popularity
        + (scores.freshness or 0) * boosts.freshness
    )


def extract_title(content: str) -> Optional[str]:
    """Markdown H1 or a reasonably sized line among the first three."""
    for line in content.split('\n')[:3]:
        stripped = line.strip()
        if stripped.startswith('# '):
            return stripped[2:].strip()
        if 10 < len(stripped) < 100:
            return stripped
    return None


def generate_summary(content: str, max_length: int = 200) -> str:
    sentences = [s for s in re.split(r'[.!?]+', content) if len(s.strip()) > 20]
    summary = ''
    for sentence in sentences[:3]:
        if len(summary) + len(sentence) > max_length:
            break
        summary += sentence.strip() + '. '
    return summary.strip() or content[:max_length].strip() + '...'


class HybridSearchEngine:
    def __init__(self, gateway: MemoryGateway, store: SearchStore,
                 cache: Optional[SearchResultsCache] = None, config: Optional[SearchConfig] = None):
        self.gateway = gateway
        self.store = store
        self.config = config or SearchConfig()
        self.cache = cache or SearchResultsCache(self.config)

    def _boosts(self, options: SearchOptions) -> BoostFactors:
        if options.boost_factors is not None:
            return options.boost_factors
        return BoostFactors(**self.config.boost_weights)

    def _validate(self, options: SearchOptions) -> Tuple[int, int]:
        if options.search_type not in SEARCH_TYPES:
            raise InvalidSearchRequest(f"Unknown search type: {options.search_type}")
        if options.offset < 0:
            raise InvalidSearchRequest("offset must be >= 0")
        limit = min(options.limit or self.config.default_limit, self.config.max_limit)
        return max(limit, 1), options.offset

    @log_performance(threshold_ms=2000.0)
    async def search(self, query: str, filters: Optional[SearchFilters] = None,
                     options: Optional[SearchOptions] = None) -> SearchResponse:
        filters = filters or SearchFilters()
        options = options or SearchOptions()
        limit, offset = self._validate(options)
        started = time.perf_counter()

        cache_key = generate_query_hash(
            query,
            filters.model_dump(mode='json', exclude_none=True),
            options.model_dump(mode='json', exclude_none=True, exclude={'session_id'}),
        )
        cached = await self.cache.get(cache_key)
        record_cache_event(cached.status.value)
        if cached.hit:
            logger.info(f"Using cached hybrid search results for: {query}")
            return SearchResponse(**{**cached.value, 'cached': True})

        try:
            results = await self._run_legs(query, filters, options)
        except Exception as e:
            record_search_metrics(options.search_type, time.perf_counter() - started, 0, error=str(e))
            raise

        page = results[offset:offset + limit]
        search_time = int((time.perf_counter() - started) * 1000)
        await self._track(query, options, filters, len(results), search_time)
        suggestions, facets = await asyncio.gather(self._suggestions(query), self._facets(query, filters))

        response = SearchResponse(
            query=query,
            search_type=options.search_type,
            total_results=len(results),
            search_time=search_time,
            results=page,
            suggestions=suggestions,
            facets=facets,
        )
        record_search_metrics(options.search_type, time.perf_counter() - started, len(results))
        if cached.status != CacheStatus.UNAVAILABLE:
            await self.cache.set(cache_key, response.model_dump(mode='json'), self.config.cache_ttl)
        return response

    async def _run_legs(self, query: str, filters: SearchFilters,
                        options: SearchOptions) -> List[HybridSearchResult]:
        boosts = self._boosts(options)
        if options.search_type == 'semantic':
            results = await self.semantic_search(query, filters, options)
        elif options.search_type == 'keyword':
            results = await self.keyword_search(query, filters)
        else:
            semantic, keyword = await asyncio.gather(
                self.semantic_search(query, filters, options),
                self.keyword_search(query, filters),
                return_exceptions=True,
            )
            if isinstance(semantic, Exception) and isinstance(keyword, Exception):
                raise semantic
            if isinstance(semantic, Exception):
                logger.warning(f"Semantic search failed, using keyword results only: {semantic}")
                semantic = []
            if isinstance(keyword, Exception):
                logger.warning(f"Keyword search failed, using semantic results only: {keyword}")
                keyword = []
            results = self.merge(semantic, keyword)

        for result in results:
            result.scores.combined = calculate_hybrid_score(result.scores, boosts)
        return sorted(results, key=lambda r: -r.scores.combined)

    @staticmethod
    def merge(semantic: List[HybridSearchResult],
              keyword: List[HybridSearchResult]) -> List[HybridSearchResult]:
        """Union by content hash; a keyword hit on a semantic result adds its keyword score."""
        merged: Dict[str, HybridSearchResult] = {}
        for result in semantic:
            merged.setdefault(content_hash(result.content), result)
        for result in keyword:
            key = content_hash(result.content)
            existing = merged.get(key)
            if existing is None:
                merged[key] = result
            else:
                existing.scores.keyword = result.scores.keyword
        return list(merged.values())

    async def semantic_search(self, query: str, filters: SearchFilters,
                              options: SearchOptions) -> List[HybridSearchResult]:
        vector_filters = {}
        if filters.content_type:
            vector_filters['type'] = filters.content_type[0]
        if filters.language:
            vector_filters['language'] = filters.language[0]

        if options.project_id:
            hits = await self.gateway.retrieve(query, vector_filters, project_id=options.project_id,
                                               scope='all', limit=self.config.max_limit)
        else:
            hits = await self.gateway.retrieve(query, vector_filters, scope=GLOBAL_SCOPE,
                                               limit=self.config.max_limit)

        results = []
        for hit in hits:
            source = hit.payload.get('source') or ''
            results.append(HybridSearchResult(
                id=hit.id or content_hash(hit.content),
                content=hit.content,
                title=extract_title(hit.content),
                summary=generate_summary(hit.content),
                source=ResultSource(url=source, type='vector', path=source or None),
                metadata=ResultMetadata(
                    content_type=hit.payload.get('type') or 'documentation',
                    language=hit.payload.get('language'),
                    word_count=len(hit.content.split()),
                ),
                scores=ResultScores(semantic=hit.score, combined=hit.score),
            ))
        return results

    async def keyword_search(self, query: str, filters: SearchFilters) -> List[HybridSearchResult]:
        rows = await self.store.keyword_search(query, filters, limit=self.config.max_limit)
        return [
            HybridSearchResult(
                id=row.id,
                content=row.content,
                title=row.title,
                summary=row.summary,
                source=ResultSource(url=row.source_url, type=row.source_type, path=row.source_url),
                metadata=ResultMetadata(
                    content_type=row.content_type,
                    language=row.language,
                    complexity=row.complexity,
                    word_count=row.word_count,
                    freshness=row.freshness,
                    popularity=row.popularity,
                ),
                scores=ResultScores(
                    keyword=keyword_score(query, row.content, row.title),
                    popularity=row.popularity / 100,
                    freshness=row.freshness,
                ),
                timestamp=row.created_at,
            )
            for row in rows
        ]

    async def _track(self, query: str, options: SearchOptions, filters: SearchFilters,
                     result_count: int, search_time: int) -> None:
        try:
            await self.store.track_query(query, options.search_type, filters, result_count,
                                         search_time, options.session_id)
        except Exception as e:
            logger.error(f"Failed to track search query: {e}")

    async def _suggestions(self, query: str) -> List[str]:
        try:
            return await self.store.suggestions(query, self.config.suggestion_limit)
        except Exception as e:
            logger.error(f"Failed to get search suggestions: {e}")
            return []

    async def _facets(self, query: str, filters: SearchFilters) -> Facets:
        try:
            return Facets(**await self.store.facets(query, filters))
        except Exception as e:
            logger.error(f"Failed to get search facets: {e}")
            return Facets()

    async def index_content(self, content: str, source_url: str, source_type: str, content_type: str,
                            language: Optional[str] = None, title: Optional[str] = None,
                            complexity: Optional[str] = None) -> str:
        """Add ``content`` to the keyword index; returns its content hash."""
        key = content_hash(content)
        await self.store.index_content(
            key, content, source_url, source_type, content_type,
            title=title or extract_title(content),
            summary=generate_summary(content),
            language=language,
            word_count=len(content.split()),
            complexity=complexity,
            freshness=calculate_freshness(),
        )
        return key

    async def remove_source(self, source_url: str) -> int:
        return await self.store.remove_source(source_url)

    async def invalidate_cache(self) -> int:
        """Drop cached responses after the indexed memory changed."""
        dropped = await self.cache.invalidate()
        if dropped:
            logger.info(f"Invalidated {dropped} cached search responses")
        return dropped
