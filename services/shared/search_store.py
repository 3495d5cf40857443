"""Keyword index, query history and suggestions.

Filters are duck-typed: any object exposing ``content_type``, ``source_type``,
``language``, ``complexity``, ``freshness``, ``word_count`` and
``date_range`` attributes (the hybrid search ``SearchFilters`` model) works.
Range attributes carry ``min``/``max``, the date range ``start``/``end``.
"""
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from .models import SearchIndexEntry, SearchQuery, SearchSuggestion, utcnow
from .projects import SessionRunner

logger = logging.getLogger(__name__)

FACET_COLUMNS = {
    'content_types': SearchIndexEntry.content_type,
    'source_types': SearchIndexEntry.source_type,
    'languages': SearchIndexEntry.language,
    'complexities': SearchIndexEntry.complexity,
}

# facet name -> filter attribute it is excluded from
FACET_FILTERS = {
    'content_types': 'content_type',
    'source_types': 'source_type',
    'languages': 'language',
    'complexities': 'complexity',
}

# (age limit in days, score), first match wins
FRESHNESS_BUCKETS = ((7, 1.0), (30, 0.8), (90, 0.6), (180, 0.4), (365, 0.2))


def freshness_score(created_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Step score in (0, 1] by age; naive timestamps are treated as UTC."""
    if created_at is None:
        return 1.0
    now = now or utcnow()
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    age_days = (now - created_at).total_seconds() / 86400
    for limit, score in FRESHNESS_BUCKETS:
        if age_days <= limit:
            return score
    return 0.1


def query_hash(query: str) -> str:
    return hashlib.sha256(query.lower().strip().encode('utf-8')).hexdigest()[:16]


def _filters_payload(filters: Any) -> Optional[str]:
    if filters is None:
        return None
    if hasattr(filters, 'model_dump'):
        return json.dumps(filters.model_dump(mode='json', exclude_none=True), sort_keys=True)
    return json.dumps(filters, sort_keys=True, default=str)


def _text_clause(query: str):
    pattern = f"%{query.strip()}%"
    return or_(SearchIndexEntry.content.like(pattern), SearchIndexEntry.title.like(pattern))


def _filter_clauses(filters: Any, skip: Optional[str] = None) -> List[Any]:
    if filters is None:
        return []

    clauses = []
    for attr, column in (
        ('content_type', SearchIndexEntry.content_type),
        ('source_type', SearchIndexEntry.source_type),
        ('language', SearchIndexEntry.language),
        ('complexity', SearchIndexEntry.complexity),
    ):
        values = getattr(filters, attr, None)
        if values and attr != skip:
            clauses.append(column.in_(list(values)))

    for attr, column in (
        ('freshness', SearchIndexEntry.freshness),
        ('word_count', SearchIndexEntry.word_count),
    ):
        bounds = getattr(filters, attr, None)
        if bounds is None:
            continue
        if bounds.min is not None:
            clauses.append(column >= bounds.min)
        if bounds.max is not None:
            clauses.append(column <= bounds.max)

    date_range = getattr(filters, 'date_range', None)
    if date_range is not None:
        if date_range.start is not None:
            clauses.append(SearchIndexEntry.created_at >= date_range.start)
        if date_range.end is not None:
            clauses.append(SearchIndexEntry.created_at <= date_range.end)
    return clauses


class SearchStore(SessionRunner):
    """Relational side of hybrid search."""

    async def keyword_search(self, query: str, filters: Any = None, limit: int = 50) -> List[SearchIndexEntry]:
        def _search(session: Session) -> List[SearchIndexEntry]:
            stmt = select(SearchIndexEntry)
            if query.strip():
                stmt = stmt.where(_text_clause(query))
            for clause in _filter_clauses(filters):
                stmt = stmt.where(clause)
            stmt = stmt.order_by(
                SearchIndexEntry.popularity.desc(),
                SearchIndexEntry.freshness.desc(),
                SearchIndexEntry.word_count.desc(),
            ).limit(limit)
            return list(session.scalars(stmt))

        return await self.run(_search)

    async def facets(self, query: str, filters: Any = None) -> Dict[str, List[Dict[str, Any]]]:
        """Value counts per facet; each facet ignores its own filter."""
        def _facets(session: Session) -> Dict[str, List[Dict[str, Any]]]:
            result = {}
            for name, column in FACET_COLUMNS.items():
                count = func.count().label('count')
                stmt = select(column, count).where(column.is_not(None))
                if query.strip():
                    stmt = stmt.where(_text_clause(query))
                for clause in _filter_clauses(filters, skip=FACET_FILTERS[name]):
                    stmt = stmt.where(clause)
                stmt = stmt.group_by(column).order_by(count.desc(), column)
                result[name] = [{'value': value, 'count': int(n)} for value, n in session.execute(stmt)]
            return result

        return await self.run(_facets)

    async def track_query(self, query: str, search_type: str, filters: Any = None,
                          result_count: int = 0, search_time: int = 0,
                          session_id: Optional[str] = None) -> None:
        """Append to the query history and bump the suggestion counter."""
        normalized = query.lower().strip()

        def _track(session: Session) -> None:
            session.add(SearchQuery(
                query=query,
                query_hash=query_hash(query),
                search_type=search_type,
                filters=_filters_payload(filters),
                result_count=result_count,
                search_time=search_time,
                session_id=session_id,
            ))
            if not normalized:
                return
            suggestion = session.scalars(
                select(SearchSuggestion).where(SearchSuggestion.suggestion == normalized)
            ).first()
            if suggestion is None:
                session.add(SearchSuggestion(suggestion=normalized, category='popular', search_count=1))
            else:
                suggestion.search_count += 1
                suggestion.last_used = utcnow()

        await self.run(_track)

    async def suggestions(self, query: str, limit: int = 5) -> List[str]:
        normalized = query.lower().strip()

        def _suggest(session: Session) -> List[str]:
            stmt = select(SearchSuggestion.suggestion)
            if normalized:
                stmt = stmt.where(or_(
                    SearchSuggestion.suggestion.startswith(normalized),
                    SearchSuggestion.suggestion.contains(normalized),
                ))
            stmt = stmt.order_by(
                SearchSuggestion.search_count.desc(),
                SearchSuggestion.last_used.desc(),
            ).limit(limit)
            return list(session.scalars(stmt))

        return await self.run(_suggest)

    async def index_content(self, content_hash: str, content: str, source_url: str, source_type: str,
                            content_type: str, **fields: Any) -> SearchIndexEntry:
        """Insert or update the entry identified by ``content_hash``."""
        def _upsert(session: Session) -> SearchIndexEntry:
            entry = session.scalars(
                select(SearchIndexEntry).where(SearchIndexEntry.content_hash == content_hash)
            ).first()
            if entry is None:
                entry = SearchIndexEntry(content_hash=content_hash)
                session.add(entry)
            entry.content = content
            entry.source_url = source_url
            entry.source_type = source_type
            entry.content_type = content_type
            entry.title = fields.get('title')
            entry.summary = fields.get('summary')
            entry.language = fields.get('language')
            entry.word_count = fields.get('word_count', len(content.split()))
            entry.complexity = fields.get('complexity') or 'medium'
            entry.freshness = fields.get('freshness', 1.0)
            session.flush()
            return entry

        return await self.run(_upsert)

    async def remove_source(self, source_url: str) -> int:
        def _remove(session: Session) -> int:
            result = session.execute(delete(SearchIndexEntry).where(SearchIndexEntry.source_url == source_url))
            return result.rowcount or 0

        removed = await self.run(_remove)
        if removed:
            logger.info(f"Removed {removed} keyword index entries for {source_url}")
        return removed
