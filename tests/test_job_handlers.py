"""Tests for the queue processors."""

import pathlib
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import IndexingConfig
from indexer.memory import IngestResult
from pipelines.indexing import IndexingEngine, IndexingOutcome, ScheduledIndexingResult
from server.job_handlers import JobHandlers
from server.jobs import QUEUE_CLEANUP, QUEUE_INDEXING, QUEUE_SCHEDULED_INDEXING, QueueJob
from services.shared.errors import ProjectNotFoundError
from services.shared.models import IndexStatus, JobStatus, TriggerType, utcnow


def queue_job(queue, data):
    return QueueJob(id='q1', queue=queue, name='job', data=data)


class ClonedCopy:
    """Working copy whose clone writes two small files."""

    def __init__(self, path):
        self.path = pathlib.Path(path)

    async def clone(self, url, depth=None, branch=None):
        for name in ('a.py', 'b.py'):
            target = self.path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(f"{name[0]} = 1\n")

    async def head_commit(self):
        return 'def456'

    async def current_branch(self):
        return 'main'


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.start_incremental_indexing = AsyncMock(return_value=IndexingOutcome(
        project_id='p1', job_id='db-1', status=JobStatus.COMPLETED, files_processed=3, vectors_added=9,
        commit='abc',
    ))
    engine.full_reindex = AsyncMock(return_value={'success': True, 'message': 'ok', 'outcome': {'status': 'completed'}})
    engine.scheduled_incremental_indexing = AsyncMock(
        return_value=ScheduledIndexingResult(True, 'no_changes', 'No new commits found'),
    )
    return engine


@pytest.fixture
def mock_gateway():
    gateway = MagicMock()
    gateway.list_projects = AsyncMock(return_value=['global', 'p1', 'ghost'])
    gateway.delete_all_project_vectors = AsyncMock(return_value={'success': True, 'deleted_count': 7})
    return gateway


@pytest.fixture
def handlers(engine, project_store, mock_gateway, queue_manager):
    return JobHandlers(engine, project_store, mock_gateway, queue_manager)


class TestIndexingProcessor:
    @pytest.mark.asyncio
    async def test_incremental(self, handlers, engine, project_store, project):
        await project_store.start_indexing_job('p1', job_id='db-1')
        job = queue_job(QUEUE_INDEXING, {'project_id': 'p1', 'job_id': 'db-1', 'branch': 'dev',
                                         'full_reindex': False, 'triggered_by': 'WEBHOOK'})

        result = await handlers.process_indexing_job(job)

        assert result['vectors_added'] == 9
        engine.start_incremental_indexing.assert_awaited_once_with(
            'p1', project.git_repo, 'HEAD', 'dev', 'db-1', TriggerType.WEBHOOK,
        )
        stored = await project_store.get_indexing_job('db-1')
        assert stored.status == JobStatus.RUNNING.value

    @pytest.mark.asyncio
    async def test_full_reindex(self, handlers, engine, project):
        job = queue_job(QUEUE_INDEXING, {'project_id': 'p1', 'full_reindex': True})

        result = await handlers.process_indexing_job(job)

        assert result == {'status': 'completed'}
        engine.full_reindex.assert_awaited_once_with('p1', project.git_repo, 'main', None, TriggerType.MANUAL)

    @pytest.mark.asyncio
    async def test_failed_reindex_raises_and_persists(self, handlers, engine, project_store, project):
        await project_store.start_indexing_job('p1', job_id='db-1')
        engine.full_reindex.return_value = {'success': False, 'message': 'clone failed'}
        job = queue_job(QUEUE_INDEXING, {'project_id': 'p1', 'job_id': 'db-1', 'full_reindex': True})

        with pytest.raises(RuntimeError, match='clone failed'):
            await handlers.process_indexing_job(job)

        stored = await project_store.get_indexing_job('db-1')
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_message == 'clone failed'

    @pytest.mark.asyncio
    async def test_missing_project(self, handlers):
        with pytest.raises(ProjectNotFoundError):
            await handlers.process_indexing_job(queue_job(QUEUE_INDEXING, {'project_id': 'missing'}))

    @pytest.mark.asyncio
    async def test_cancelled_full_reindex_is_not_a_failure(self, project_store, queue_manager, project, tmp_path):
        gateway = MagicMock()
        gateway.delete_all_project_vectors = AsyncMock(return_value={'success': True, 'deleted_count': 0})
        engine = IndexingEngine(gateway, project_store, config=IndexingConfig(work_dir=str(tmp_path / 'work')))
        engine._working_copy = ClonedCopy

        async def ingest_then_cancel(*args, **kwargs):
            engine.cancel_indexing('p1')
            return IngestResult(success=True, vectors_added=1, project_id='p1', scope='project')

        gateway.ingest = AsyncMock(side_effect=ingest_then_cancel)
        handlers = JobHandlers(engine, project_store, gateway, queue_manager)
        await project_store.start_indexing_job('p1', job_id='db-1', full_reindex=True)

        result = await handlers.process_indexing_job(
            queue_job(QUEUE_INDEXING, {'project_id': 'p1', 'job_id': 'db-1', 'full_reindex': True}))

        assert result['status'] == JobStatus.CANCELLED.value
        assert gateway.ingest.await_count == 1
        stored = await project_store.get_indexing_job('db-1')
        assert stored.status == JobStatus.CANCELLED.value
        assert stored.error_message is None


class TestScheduledProcessor:
    @pytest.mark.asyncio
    async def test_missing_project(self, handlers):
        result = await handlers.process_scheduled_indexing_job(
            queue_job(QUEUE_SCHEDULED_INDEXING, {'project_id': 'missing'}))
        assert result == {'success': False, 'message': 'Project not found'}

    @pytest.mark.asyncio
    async def test_disabled(self, handlers, project):
        result = await handlers.process_scheduled_indexing_job(
            queue_job(QUEUE_SCHEDULED_INDEXING, {'project_id': 'p1'}))
        assert result['message'] == 'Scheduled indexing disabled'

    @pytest.mark.asyncio
    async def test_skips_while_indexing(self, handlers, engine, project_store, project):
        await project_store.update_project('p1', scheduled_indexing_enabled=True,
                                           index_status=IndexStatus.INDEXING)

        result = await handlers.process_scheduled_indexing_job(
            queue_job(QUEUE_SCHEDULED_INDEXING, {'project_id': 'p1'}))

        assert result['message'] == 'Already indexing'
        engine.scheduled_incremental_indexing.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_runs_and_records_last_run(self, handlers, engine, project_store, project):
        await project_store.update_project('p1', scheduled_indexing_enabled=True)

        result = await handlers.process_scheduled_indexing_job(
            queue_job(QUEUE_SCHEDULED_INDEXING, {'project_id': 'p1', 'branch': 'main'}))

        assert result == {'success': True, 'action': 'no_changes', 'message': 'No new commits found'}
        assert (await project_store.get_project('p1')).scheduled_indexing_last_run is not None

    @pytest.mark.asyncio
    async def test_errors_are_reported_not_raised(self, handlers, engine, project_store, project):
        await project_store.update_project('p1', scheduled_indexing_enabled=True)
        engine.scheduled_incremental_indexing.side_effect = RuntimeError("network")

        result = await handlers.process_scheduled_indexing_job(
            queue_job(QUEUE_SCHEDULED_INDEXING, {'project_id': 'p1'}))

        assert result == {'success': False, 'message': 'Error: network'}


class TestCleanupProcessor:
    @pytest.mark.asyncio
    async def test_unknown_type(self, handlers):
        result = await handlers.process_cleanup_job(queue_job(QUEUE_CLEANUP, {'type': 'everything'}))
        assert result == {'success': False, 'message': 'Unknown cleanup type'}

    @pytest.mark.asyncio
    async def test_orphaned_vectors(self, handlers, mock_gateway, project):
        result = await handlers.process_cleanup_job(queue_job(QUEUE_CLEANUP, {'type': 'failed_vectors'}))

        assert result['success'] is True
        assert result['orphaned_projects'] == ['ghost']
        mock_gateway.delete_all_project_vectors.assert_awaited_once_with('ghost')

    @pytest.mark.asyncio
    async def test_project_cleanup(self, handlers, mock_gateway, queue_manager, project):
        await queue_manager.enqueue_indexing_job('p1', 'db-1')

        result = await handlers.process_cleanup_job(
            queue_job(QUEUE_CLEANUP, {'type': 'project_cleanup', 'target_id': 'p1'}))

        assert result == {'success': True, 'message': 'Cleanup project_cleanup completed', 'deleted_count': 7}
        assert (await queue_manager.get_active_project_job('p1')) == {'exists': False}

    @pytest.mark.asyncio
    async def test_expired_jobs(self, handlers, project_store, session_factory, project):
        from services.shared.models import IndexingJob

        old = await project_store.start_indexing_job('p1', job_id='old')
        await project_store.update_indexing_progress('old', JobStatus.COMPLETED)
        with session_factory() as session:
            session.get(IndexingJob, old.id).created_at = utcnow() - timedelta(days=8)
            session.commit()
        await project_store.start_indexing_job('p1', job_id='recent')

        result = await handlers.process_cleanup_job(queue_job(QUEUE_CLEANUP, {'type': 'expired_jobs'}))

        assert result['removed_jobs'] == 1
        assert await project_store.get_indexing_job('old') is None
        assert await project_store.get_indexing_job('recent') is not None
