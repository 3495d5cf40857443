"""HTTP API tests against an in-process service container."""

from functools import partial
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from pipelines.indexing import IndexingEngine
from server.api import ServiceContainer, create_app
from server.hybrid_search import HybridSearchEngine
from server.jobs import JobPriority, MemoryQueueBackend, QueueManager
from services.shared.errors import EmbeddingError

SNIPPET = '''def invalidate_cache(key):
    """Drop a cached entry."""
    return cache.pop(key, None)
'''


@pytest.fixture
def container(project_store, gateway, search_store, queue_config):
    queue = QueueManager(queue_config, backend=MemoryQueueBackend())
    return ServiceContainer(
        settings=Settings(),
        projects=project_store,
        gateway=gateway,
        engine=IndexingEngine(gateway, project_store),
        search=HybridSearchEngine(gateway, search_store),
        queue=queue,
    )


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as client:
        client.portal.call(partial(container.queue.initialize, start_scheduler=False))
        client.portal.call(partial(container.projects.create_project, 'demo', 'https://example.com/demo.git',
                                   project_id='p1'))
        yield client
        client.portal.call(container.queue.shutdown)


def start_paused_scheduler(client, queue):
    async def _start():
        queue.scheduler = queue._build_scheduler(False)
        queue.scheduler.start(paused=True)
    client.portal.call(_start)


class TestHealth:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data['status'] == 'healthy'
        assert data['queue_backend'] == 'MemoryQueueBackend'
        assert data['active_indexing'] == []

    def test_metrics(self, client):
        client.get("/health")
        r = client.get("/metrics")
        assert r.status_code == 200
        assert 'memfoundry' in r.text


class TestIndexing:
    def test_unknown_project(self, client):
        assert client.post("/projects/missing/index").status_code == 404
        assert client.get("/projects/missing/status").status_code == 404

    def test_enqueue_then_deduplicate(self, client):
        first = client.post("/projects/p1/index", json={'branch': 'dev'})
        assert first.status_code == 202
        assert first.json()['deduplicated'] is False
        assert first.json()['state'] == 'waiting'

        second = client.post("/projects/p1/index")
        assert second.status_code == 202
        assert second.json()['deduplicated'] is True
        assert second.json()['job_id'] == first.json()['job_id']

        stats = client.get("/queues/stats").json()
        assert stats['indexing']['waiting'] == 1

    def test_status(self, client):
        client.post("/projects/p1/index")

        data = client.get("/projects/p1/status").json()

        assert data['project']['id'] == 'p1'
        assert data['latest_job']['status'] == 'pending'
        assert data['queue']['state'] == 'waiting'
        assert data['live'] is None
        assert data['schedule'] is None

    def test_cancel_dequeues_and_cancels_job(self, client):
        client.post("/projects/p1/index")

        r = client.post("/projects/p1/cancel")

        assert r.json() == {'cancelled': True, 'running_cancelled': False, 'dequeued': True}
        status = client.get("/projects/p1/status").json()
        assert status['latest_job']['status'] == 'cancelled'
        assert status['queue'] == {'exists': False}


class TestWebhooks:
    PUSH = {'ref': 'refs/heads/dev', 'head_commit': {'id': 'abc1234def', 'author': {'name': 'Sam'}}}

    def test_push_enqueues_incremental_job(self, client, container):
        r = client.post("/webhooks/p1", json=self.PUSH, headers={'X-GitHub-Event': 'push'})

        assert r.status_code == 200
        data = r.json()
        assert data['branch'] == 'dev'
        assert data['platform'] == 'github'

        queued = client.get("/projects/p1/status").json()['queue']
        assert queued['data'] == {'project_id': 'p1', 'job_id': data['job_id'], 'branch': 'dev',
                                  'full_reindex': False, 'triggered_by': 'WEBHOOK'}
        job = client.portal.call(container.queue.get_job, data['queue_job_id'])
        assert job.priority == JobPriority.NORMAL

        latest = client.get("/projects/p1/status").json()['latest_job']
        assert latest['triggered_by'] == 'WEBHOOK'

    def test_skipped_while_indexing(self, client):
        client.post("/projects/p1/index")

        r = client.post("/webhooks/p1", json=self.PUSH, headers={'X-GitHub-Event': 'push'})

        assert r.json()['message'] == 'Indexing already in progress'

    def test_non_push_event(self, client):
        r = client.post("/webhooks/p1", json={}, headers={'X-GitHub-Event': 'ping'})

        assert r.status_code == 200
        assert 'not a push event' in r.json()['reason']
        assert client.get("/projects/p1/status").json()['queue'] == {'exists': False}

    def test_unknown_project(self, client):
        assert client.post("/webhooks/missing", json=self.PUSH,
                           headers={'X-GitHub-Event': 'push'}).status_code == 404


class TestSchedule:
    def test_interval_must_be_positive(self, client):
        assert client.post("/projects/p1/schedule", json={'interval_minutes': 0}).status_code == 422

    def test_without_scheduler_is_unavailable(self, client):
        assert client.post("/projects/p1/schedule").status_code == 503

    def test_schedule_and_remove(self, client, container):
        start_paused_scheduler(client, container.queue)

        r = client.post("/projects/p1/schedule", json={'branch': 'dev', 'interval_minutes': 15})
        assert r.status_code == 200
        assert r.json()['interval_minutes'] == 15

        status = client.get("/projects/p1/status").json()
        assert status['project']['scheduled_indexing_enabled'] is True
        assert status['schedule']['branch'] == 'dev'

        assert client.delete("/projects/p1/schedule").json() == {'removed': True}
        assert client.get("/projects/p1/status").json()['schedule'] is None


class TestMemory:
    def test_ingest_and_retrieve(self, client):
        r = client.post("/memory/ingest", json={'content': SNIPPET, 'source': 'src/cache.py', 'language': 'python'})
        assert r.status_code == 200
        assert r.json()['project_id'] == 'global'
        assert r.json()['vectors_added'] >= 1

        results = client.post("/memory/retrieve", json={'query': 'invalidate cache key'}).json()['results']
        assert results[0]['payload']['source'] == 'src/cache.py'
        assert client.get("/memory/projects").json() == {'projects': ['global']}

    def test_global_ingest_is_keyword_searchable(self, client):
        client.post("/memory/ingest", json={'content': SNIPPET, 'source': 'src/cache.py', 'language': 'python'})

        r = client.post("/search", json={'query': 'invalidate', 'options': {'search_type': 'keyword'}})

        assert r.status_code == 200
        assert r.json()['results'][0]['source']['url'] == 'src/cache.py'

    def test_project_ingest_stays_out_of_keyword_index(self, client):
        client.post("/memory/ingest", json={'content': SNIPPET, 'source': 'src/cache.py', 'project_id': 'p1'})

        r = client.post("/search", json={'query': 'invalidate', 'options': {'search_type': 'keyword'}})

        assert r.json()['total_results'] == 0

    def test_delete_source_and_project(self, client):
        client.post("/memory/ingest", json={'content': SNIPPET, 'source': 'src/cache.py', 'project_id': 'p1'})

        r = client.post("/memory/delete-source", json={'source': 'src/cache.py', 'project_id': 'p1'})
        assert r.json() == {'success': True, 'project_id': 'p1', 'source': 'src/cache.py'}

        assert client.delete("/memory/projects/p1").json() == {'success': True, 'deleted_count': 0}

    def test_retrieve_limit_is_validated(self, client):
        assert client.post("/memory/retrieve", json={'query': 'x', 'limit': 0}).status_code == 422
        assert client.post("/memory/retrieve", json={'query': 'x', 'scope': 'team'}).status_code == 422

    def test_embedding_failure_is_bad_gateway(self, client, container):
        failing = AsyncMock(side_effect=EmbeddingError("ollama down", operation="embed"))
        with patch.object(container.gateway, 'retrieve', failing):
            r = client.post("/memory/retrieve", json={'query': 'x'})
        assert r.status_code == 502


class TestSearch:
    def test_invalid_search_type(self, client):
        r = client.post("/search", json={'query': 'x', 'options': {'search_type': 'fuzzy'}})
        assert r.status_code == 400

    def test_response_shape(self, client):
        r = client.post("/search", json={'query': 'nothing indexed yet'})

        assert r.status_code == 200
        data = r.json()
        assert data['search_type'] == 'hybrid'
        assert data['results'] == []
        assert set(data['facets']) >= {'content_types', 'languages'}

    def test_ingest_invalidates_cached_results(self, client):
        query = {'query': 'invalidate', 'options': {'search_type': 'keyword'}}
        client.post("/search", json=query)
        assert client.post("/search", json=query).json()['cached'] is True

        client.post("/memory/ingest", json={'content': SNIPPET, 'source': 'src/cache.py'})

        data = client.post("/search", json=query).json()
        assert data['cached'] is False
        assert data['total_results'] == 1
