"""Tests for hybrid search fusion, degradation and caching."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from indexer.memory import RetrievedMemory
from server.hybrid_search import (
    BoostFactors,
    HybridSearchEngine,
    ResultScores,
    SearchFilters,
    SearchOptions,
    calculate_hybrid_score,
    extract_title,
    generate_summary,
    keyword_score,
)
from services.shared.errors import InvalidSearchRequest, VectorStoreError
from services.shared.models import utcnow

GUIDE = "Redis cache invalidation guide for the search service"


def keyword_row(content, popularity=0, freshness=0.0, row_id='k1', source='docs/cache.md'):
    return SimpleNamespace(
        id=row_id, content=content, title=None, summary=None, source_url=source, source_type='docs',
        content_type='documentation', language='markdown', complexity='medium',
        word_count=len(content.split()), freshness=freshness, popularity=popularity, created_at=utcnow(),
    )


@pytest.fixture
def mock_gateway():
    gateway = MagicMock()
    gateway.retrieve = AsyncMock(return_value=[
        RetrievedMemory(id='v1', score=0.9, content=GUIDE,
                        payload={'source': 'docs/cache.md', 'type': 'documentation'}),
    ])
    return gateway


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.keyword_search = AsyncMock(return_value=[keyword_row(GUIDE)])
    store.track_query = AsyncMock()
    store.suggestions = AsyncMock(return_value=['redis cache'])
    store.facets = AsyncMock(return_value={'content_types': [{'value': 'documentation', 'count': 1}]})
    return store


@pytest.fixture
def engine(mock_gateway, mock_store):
    return HybridSearchEngine(mock_gateway, mock_store)


class TestScoring:
    def test_weighted_sum(self):
        scores = ResultScores(semantic=0.9, keyword=0.4, popularity=0.0, freshness=0.0)
        assert calculate_hybrid_score(scores, BoostFactors()) == pytest.approx(0.66)

    def test_missing_scores_count_as_zero(self):
        assert calculate_hybrid_score(ResultScores(keyword=1.0), BoostFactors()) == pytest.approx(0.3)

    def test_keyword_score_range(self):
        assert keyword_score('', 'anything') == 0.0
        assert keyword_score('cache', 'no match here') == 0.0
        assert keyword_score('cache', 'cache', title='Cache') == 1.0
        assert 0 < keyword_score('cache missing', 'cache content') < 1

    def test_title_and_summary(self):
        assert extract_title("# Installing\nbody") == 'Installing'
        assert extract_title("short\nx") is None
        summary = generate_summary("This sentence is comfortably long enough. Tiny. Another sentence that is long enough!")
        assert summary == "This sentence is comfortably long enough. Another sentence that is long enough."


class TestFusion:
    @pytest.mark.asyncio
    async def test_same_content_is_merged(self, engine):
        """Semantic 0.9 and keyword 0.4 on the same text combine to 0.66."""
        with patch('server.hybrid_search.keyword_score', return_value=0.4):
            response = await engine.search('redis cache')

        assert response.total_results == 1
        result = response.results[0]
        assert result.id == 'v1'
        assert result.scores.semantic == 0.9
        assert result.scores.keyword == 0.4
        assert result.scores.combined == pytest.approx(0.66)
        assert response.suggestions == ['redis cache']
        assert response.facets.content_types[0].value == 'documentation'

    @pytest.mark.asyncio
    async def test_distinct_content_kept_and_ranked(self, engine, mock_store):
        mock_store.keyword_search.return_value = [keyword_row("Queue worker retry policy", popularity=100,
                                                              freshness=1.0, row_id='k2')]
        with patch('server.hybrid_search.keyword_score', return_value=1.0):
            response = await engine.search('retry')

        assert [r.id for r in response.results] == ['v1', 'k2']
        combined = [r.scores.combined for r in response.results]
        assert combined == sorted(combined, reverse=True)
        assert combined[1] == pytest.approx(0.3 + 0.05 + 0.05)

    @pytest.mark.asyncio
    async def test_deterministic(self, engine, mock_store):
        mock_store.keyword_search.return_value = [
            keyword_row("first keyword document", row_id='a'),
            keyword_row("second keyword document", row_id='b'),
        ]
        first = await engine.search('document', options=SearchOptions(search_type='keyword'))
        engine.cache.memory.clear()
        second = await engine.search('document', options=SearchOptions(search_type='keyword'))

        assert [r.id for r in first.results] == [r.id for r in second.results]

    @pytest.mark.asyncio
    async def test_pagination(self, engine, mock_store):
        mock_store.keyword_search.return_value = [
            keyword_row(f"document number {n}", row_id=f"r{n}", popularity=100 - n) for n in range(5)
        ]
        response = await engine.search('document', options=SearchOptions(search_type='keyword', limit=2, offset=2))

        assert response.total_results == 5
        assert [r.id for r in response.results] == ['r2', 'r3']


class TestDegradation:
    @pytest.mark.asyncio
    async def test_semantic_failure_keeps_keyword_results(self, engine, mock_gateway):
        mock_gateway.retrieve.side_effect = VectorStoreError("down", operation="search")

        response = await engine.search('redis cache')

        assert [r.id for r in response.results] == ['k1']
        assert response.results[0].scores.semantic is None

    @pytest.mark.asyncio
    async def test_keyword_failure_keeps_semantic_results(self, engine, mock_store):
        mock_store.keyword_search.side_effect = RuntimeError("db locked")

        response = await engine.search('redis cache')

        assert [r.id for r in response.results] == ['v1']

    @pytest.mark.asyncio
    async def test_both_legs_failing_raises(self, engine, mock_gateway, mock_store):
        mock_gateway.retrieve.side_effect = VectorStoreError("down", operation="search")
        mock_store.keyword_search.side_effect = RuntimeError("db locked")

        with pytest.raises(VectorStoreError):
            await engine.search('redis cache')

    @pytest.mark.asyncio
    async def test_side_queries_do_not_fail_search(self, engine, mock_store):
        mock_store.track_query.side_effect = RuntimeError("write failed")
        mock_store.suggestions.side_effect = RuntimeError("read failed")
        mock_store.facets.side_effect = RuntimeError("read failed")

        response = await engine.search('redis cache')

        assert response.total_results == 1
        assert response.suggestions == []
        assert response.facets.content_types == []


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_search_type(self, engine):
        with pytest.raises(InvalidSearchRequest):
            await engine.search('x', options=SearchOptions(search_type='fuzzy'))

    @pytest.mark.asyncio
    async def test_negative_offset(self, engine):
        with pytest.raises(InvalidSearchRequest):
            await engine.search('x', options=SearchOptions(offset=-1))

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, engine, mock_store):
        mock_store.keyword_search.return_value = [
            keyword_row(f"document {n}", row_id=f"r{n}") for n in range(60)
        ]
        response = await engine.search('document', options=SearchOptions(search_type='keyword', limit=500))
        assert len(response.results) == 50


class TestSemanticLeg:
    @pytest.mark.asyncio
    async def test_project_scope_and_filters(self, engine, mock_gateway):
        await engine.search('cache', SearchFilters(content_type=['code', 'documentation'], language=['python']),
                            SearchOptions(search_type='semantic', project_id='p1'))

        args, kwargs = mock_gateway.retrieve.await_args
        assert args == ('cache', {'type': 'code', 'language': 'python'})
        assert kwargs == {'project_id': 'p1', 'scope': 'all', 'limit': 50}

    @pytest.mark.asyncio
    async def test_global_by_default(self, engine, mock_gateway):
        await engine.search('cache', options=SearchOptions(search_type='semantic'))
        assert mock_gateway.retrieve.await_args.kwargs['scope'] == 'global'


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_search_is_cached(self, engine, mock_gateway, mock_store):
        first = await engine.search('redis cache')
        second = await engine.search('  Redis Cache ')

        assert first.cached is False
        assert second.cached is True
        assert second.results[0].id == first.results[0].id
        assert mock_gateway.retrieve.await_count == 1
        assert mock_store.track_query.await_count == 1

    @pytest.mark.asyncio
    async def test_sessions_share_cached_results(self, engine, mock_gateway):
        await engine.search('redis cache', options=SearchOptions(session_id='alice'))
        second = await engine.search('redis cache', options=SearchOptions(session_id='bob'))

        assert second.cached is True
        assert mock_gateway.retrieve.await_count == 1

    @pytest.mark.asyncio
    async def test_invalidate_cache(self, engine, mock_gateway):
        await engine.search('redis cache')

        assert await engine.invalidate_cache() == 1
        assert (await engine.search('redis cache')).cached is False
        assert mock_gateway.retrieve.await_count == 2

    @pytest.mark.asyncio
    async def test_different_options_miss(self, engine, mock_gateway):
        await engine.search('redis cache')
        await engine.search('redis cache', options=SearchOptions(limit=5))
        assert mock_gateway.retrieve.await_count == 2


class TestIndexContent:
    @pytest.mark.asyncio
    async def test_index_and_remove(self, engine, mock_store):
        mock_store.index_content = AsyncMock()
        mock_store.remove_source = AsyncMock(return_value=1)

        key = await engine.index_content("# Guide\nUse the cache wisely.", 'docs/guide.md', 'memory', 'documentation')

        args, kwargs = mock_store.index_content.await_args
        assert args[0] == key
        assert kwargs['title'] == 'Guide'
        assert kwargs['freshness'] == 1.0
        assert await engine.remove_source('docs/guide.md') == 1
