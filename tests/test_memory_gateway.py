"""Tests for the Memory Gateway against a local in-memory Qdrant."""

from unittest.mock import AsyncMock

import pytest

from indexer.memory import GLOBAL_SCOPE, resolve_scope
from indexer.vector_store import match_filter
from services.shared.errors import EmbeddingError

PYTHON_SOURCE = '''import os


def read_settings(path):
    return open(path).read()


class SettingsLoader:
    def load(self):
        return read_settings(os.environ["SETTINGS"])
'''


async def project_count(vector_store, project_id):
    return await vector_store.count(match_filter(must={'project_id': project_id}))


class TestResolveScope:
    def test_defaults_to_global(self):
        assert resolve_scope() == GLOBAL_SCOPE
        assert resolve_scope(None, 'project') == GLOBAL_SCOPE

    def test_explicit_global_wins(self):
        assert resolve_scope('p1', 'global') == GLOBAL_SCOPE

    def test_project(self):
        assert resolve_scope('p1') == 'p1'
        assert resolve_scope('p1', 'project') == 'p1'


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_chunks_and_tags_payload(self, gateway, vector_store):
        result = await gateway.ingest(PYTHON_SOURCE, 'app/settings.py', 'code', 'python',
                                      project_id='p1', scope='project')

        assert result.success
        assert result.project_id == 'p1'
        assert result.scope == 'project'
        # imports, function, class and its method
        assert result.vectors_added == 4
        assert await project_count(vector_store, 'p1') == 4

        records = await vector_store.scroll_all()
        payloads = {r.payload['chunk_name']: r.payload for r in records}
        assert payloads['load']['parent'] == 'SettingsLoader'
        assert payloads['read_settings']['chunk_type'] == 'function'
        assert all(p['source'] == 'app/settings.py' for p in payloads.values())

    @pytest.mark.asyncio
    async def test_unparseable_content_uses_paragraphs(self, gateway):
        result = await gateway.ingest("first paragraph\n\nsecond paragraph", 'notes.unknownext')
        assert result.vectors_added == 2
        assert result.project_id == GLOBAL_SCOPE

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self, gateway, embedder):
        embedder.embed = AsyncMock(side_effect=EmbeddingError("down", operation="embed"))
        with pytest.raises(EmbeddingError):
            await gateway.ingest("some text", 'a.md', 'documentation', 'markdown')

    @pytest.mark.asyncio
    async def test_reingest_after_delete_is_idempotent(self, gateway, vector_store):
        """Deleting a source before ingesting it again leaves exactly one copy."""
        first = await gateway.ingest(PYTHON_SOURCE, 'app/settings.py', 'code', 'python', project_id='p1')
        await gateway.delete_source('app/settings.py', project_id='p1')
        second = await gateway.ingest(PYTHON_SOURCE, 'app/settings.py', 'code', 'python', project_id='p1')

        assert first.vectors_added == second.vectors_added
        assert await project_count(vector_store, 'p1') == second.vectors_added


class TestScopes:
    @pytest.fixture
    def documents(self):
        return {
            'global': "Deployment checklist: rotate secrets before release",
            'p1': "Deployment script for project one uses rotate secrets helper",
            'p2': "Deployment notes for project two",
        }

    async def _seed(self, gateway, documents):
        await gateway.ingest(documents['global'], 'global.md', 'documentation', 'markdown')
        await gateway.ingest(documents['p1'], 'one.md', 'documentation', 'markdown', project_id='p1')
        await gateway.ingest(documents['p2'], 'two.md', 'documentation', 'markdown', project_id='p2')

    @pytest.mark.asyncio
    async def test_project_reads_never_cross_projects(self, gateway, documents):
        await self._seed(gateway, documents)

        results = await gateway.retrieve("deployment", project_id='p2', scope='project', limit=10)
        assert results
        assert {r.payload['project_id'] for r in results} == {'p2'}

    @pytest.mark.asyncio
    async def test_global_scope(self, gateway, documents):
        await self._seed(gateway, documents)

        results = await gateway.retrieve("deployment", limit=10)
        assert [r.source for r in results] == ['global.md']

    @pytest.mark.asyncio
    async def test_all_scope_merges_global_and_project(self, gateway, documents):
        await self._seed(gateway, documents)

        results = await gateway.retrieve("rotate secrets", project_id='p1', scope='all', limit=10)
        assert {r.payload['project_id'] for r in results} == {GLOBAL_SCOPE, 'p1'}
        assert results == sorted(results, key=lambda r: r.score, reverse=True)

    @pytest.mark.asyncio
    async def test_custom_filters_apply(self, gateway, documents):
        await self._seed(gateway, documents)
        await gateway.ingest("Deployment function", 'deploy.py', 'code', 'python')

        results = await gateway.retrieve("deployment", filters={'type': 'code'}, limit=10)
        assert [r.source for r in results] == ['deploy.py']

    @pytest.mark.asyncio
    async def test_delete_source_is_scoped(self, gateway, vector_store):
        await gateway.ingest("shared text", 'same.md', 'documentation', 'markdown', project_id='p1')
        await gateway.ingest("shared text", 'same.md', 'documentation', 'markdown', project_id='p2')

        await gateway.delete_source('same.md', project_id='p1')

        assert await project_count(vector_store, 'p1') == 0
        assert await project_count(vector_store, 'p2') == 1

    @pytest.mark.asyncio
    async def test_delete_all_project_vectors(self, gateway, vector_store, documents):
        await self._seed(gateway, documents)

        result = await gateway.delete_all_project_vectors('p1')

        assert result == {'success': True, 'deleted_count': 1}
        assert await project_count(vector_store, 'p1') == 0
        assert await project_count(vector_store, GLOBAL_SCOPE) == 1

    @pytest.mark.asyncio
    async def test_list_projects(self, gateway, documents):
        await self._seed(gateway, documents)
        assert await gateway.list_projects() == [GLOBAL_SCOPE, 'p1', 'p2']
