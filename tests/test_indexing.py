"""Tests for the indexing engine with a scripted working copy."""

import asyncio
import pathlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config.settings import IndexingConfig
from indexer.memory import IngestResult
from pipelines.git_ops import GitDiffResult
from pipelines.indexing import IndexingContext, IndexingEngine, JobRegistry
from services.shared.errors import IndexingInProgressError
from services.shared.models import IndexStatus, JobStatus, TriggerType


class FakeWorkingCopy:
    """Stands in for GitWorkingCopy; writes ``files`` into its path on setup."""

    def __init__(self, path, files, commit='def456', diff=None, error=None):
        self.path = path
        self.files = files
        self.commit = commit
        self._diff = diff or GitDiffResult()
        self.error = error

    def _materialise(self):
        root = pathlib.Path(self.path)
        for relative, content in self.files.items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)

    async def clone(self, url, depth=None, branch=None):
        if self.error:
            raise self.error
        self._materialise()

    async def prepare_incremental(self, url, branch):
        if self.error:
            raise self.error
        self._materialise()

    async def resolve(self, revision):
        return self.commit

    async def head_commit(self):
        return self.commit

    async def current_branch(self):
        return 'main'

    async def diff(self, from_revision, to_revision):
        return self._diff


def ingest_result(vectors=2):
    return IngestResult(success=True, vectors_added=vectors, project_id='p1', scope='project')


@pytest.fixture
def mock_gateway():
    gateway = MagicMock()
    gateway.ingest = AsyncMock(return_value=ingest_result())
    gateway.delete_source = AsyncMock()
    gateway.delete_all_project_vectors = AsyncMock(return_value={'success': True, 'deleted_count': 0})
    return gateway


@pytest.fixture
def engine_factory(mock_gateway, project_store, tmp_path):
    def _build(**copy_kwargs):
        engine = IndexingEngine(mock_gateway, project_store, config=IndexingConfig(work_dir=str(tmp_path / 'work')))
        engine._working_copy = lambda path: FakeWorkingCopy(path, **copy_kwargs)
        return engine
    return _build


def ingested_sources(gateway):
    return [c.args[1] for c in gateway.ingest.await_args_list]


def deleted_sources(gateway):
    return [c.args[0] for c in gateway.delete_source.await_args_list]


class TestIncrementalIndexing:
    @pytest.mark.asyncio
    async def test_first_run_indexes_everything(self, engine_factory, mock_gateway, project_store, project):
        engine = engine_factory(files={'x.py': 'x = 1\n', 'docs/y.md': '# Y\n', 'logo.png': 'bin'})

        outcome = await engine.start_incremental_indexing('p1', project.git_repo, 'HEAD', 'main')

        assert outcome.status == JobStatus.COMPLETED
        assert sorted(ingested_sources(mock_gateway)) == ['docs/y.md', 'x.py']
        assert mock_gateway.delete_source.await_count == 0

        stored = await project_store.get_project('p1')
        assert stored.last_indexed_commit == 'def456'
        assert stored.index_status == IndexStatus.COMPLETED.value
        assert stored.vector_count == 4
        assert stored.file_count == 2

    @pytest.mark.asyncio
    async def test_changes_since_last_commit(self, engine_factory, mock_gateway, project_store, project):
        """Modified x.py is purged then re-ingested, y.md purged, z.ts ingested."""
        await project_store.update_project('p1', last_indexed_commit='abc123', vector_count=10)
        diff = GitDiffResult(added=['z.ts'], modified=['x.py'], deleted=['y.md'])
        engine = engine_factory(files={'x.py': 'x = 2\n', 'z.ts': 'export const z = 1;\n'}, diff=diff)

        outcome = await engine.start_incremental_indexing('p1', project.git_repo, 'HEAD', 'main')

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.files_processed == 2
        assert outcome.vectors_added == 4
        # removed paths first, then every changed path right before its re-ingest
        assert deleted_sources(mock_gateway) == ['y.md', 'z.ts', 'x.py']
        assert ingested_sources(mock_gateway) == ['z.ts', 'x.py']
        for call in mock_gateway.ingest.await_args_list:
            assert call.kwargs == {'project_id': 'p1', 'scope': 'project'}

        stored = await project_store.get_project('p1')
        assert stored.last_indexed_commit == 'def456'
        assert stored.vector_count == 14

        job = await project_store.get_indexing_job(outcome.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.progress == 100
        assert job.processed_files == 2

    @pytest.mark.asyncio
    async def test_emptied_file_loses_its_vectors(self, engine_factory, mock_gateway, project_store, project):
        await project_store.update_project('p1', last_indexed_commit='abc123')
        engine = engine_factory(files={'x.py': '\n'}, diff=GitDiffResult(modified=['x.py']))

        outcome = await engine.start_incremental_indexing('p1', project.git_repo)

        assert outcome.status == JobStatus.COMPLETED
        assert deleted_sources(mock_gateway) == ['x.py']
        assert ingested_sources(mock_gateway) == []

    @pytest.mark.asyncio
    async def test_oversized_file_loses_its_vectors(self, engine_factory, mock_gateway, project_store,
                                                    project, tmp_path):
        await project_store.update_project('p1', last_indexed_commit='abc123')
        engine = engine_factory(files={'big.py': 'x = 1\n' * 20}, diff=GitDiffResult(modified=['big.py']))
        engine.config = IndexingConfig(work_dir=str(tmp_path / 'work'), max_file_size=10)

        await engine.start_incremental_indexing('p1', project.git_repo)

        assert deleted_sources(mock_gateway) == ['big.py']
        assert ingested_sources(mock_gateway) == []

    @pytest.mark.asyncio
    async def test_renames_and_skipped_paths(self, engine_factory, mock_gateway, project, project_store):
        await project_store.update_project('p1', last_indexed_commit='abc123')
        diff = GitDiffResult(added=['node_modules/dep.js', 'image.png'], renamed=[('old.md', 'new.md')])
        engine = engine_factory(files={'new.md': '# New\n'}, diff=diff)

        await engine.start_incremental_indexing('p1', project.git_repo)

        assert deleted_sources(mock_gateway) == ['old.md', 'new.md']
        assert ingested_sources(mock_gateway) == ['new.md']

    @pytest.mark.asyncio
    async def test_file_errors_are_counted(self, engine_factory, mock_gateway, project_store, project):
        mock_gateway.ingest.side_effect = [RuntimeError("embedding down"), ingest_result(3)]
        engine = engine_factory(files={'a.py': 'a = 1\n', 'b.py': 'b = 2\n'})

        outcome = await engine.start_incremental_indexing('p1', project.git_repo)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.error_count == 1
        assert outcome.vectors_added == 3
        job = await project_store.get_indexing_job(outcome.job_id)
        assert job.error_count == 1

    @pytest.mark.asyncio
    async def test_setup_failure_marks_job_failed(self, engine_factory, project_store, project):
        engine = engine_factory(files={}, error=RuntimeError("clone failed"))

        with pytest.raises(RuntimeError, match="clone failed"):
            await engine.start_incremental_indexing('p1', project.git_repo, job_id='job-1')

        job = await project_store.get_indexing_job('job-1')
        assert job.status == JobStatus.FAILED.value
        assert job.error_message == "clone failed"
        stored = await project_store.get_project('p1')
        assert stored.index_status == IndexStatus.ERROR.value
        assert stored.last_indexed_commit is None
        assert not engine.registry.is_running('p1')


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_between_files(self, engine_factory, mock_gateway, project_store, project):
        engine = engine_factory(files={'a.py': 'a = 1\n', 'b.py': 'b = 2\n', 'c.py': 'c = 3\n'})

        async def ingest_then_cancel(*args, **kwargs):
            engine.cancel_indexing('p1')
            return ingest_result()

        mock_gateway.ingest.side_effect = ingest_then_cancel

        outcome = await engine.start_full_indexing('p1', project.git_repo, job_id='job-2')

        assert outcome.status == JobStatus.CANCELLED
        assert outcome.files_processed == 1
        assert mock_gateway.ingest.await_count == 1

        job = await project_store.get_indexing_job('job-2')
        assert job.status == JobStatus.CANCELLED.value
        stored = await project_store.get_project('p1')
        assert stored.last_indexed_commit is None
        assert stored.index_status == IndexStatus.IDLE.value

    def test_cancel_unknown_project(self, engine_factory):
        assert engine_factory(files={}).cancel_indexing('missing') is False


class TestRegistry:
    @pytest.mark.asyncio
    async def test_one_run_per_project(self, engine_factory, project):
        engine = engine_factory(files={})
        await engine.registry.register(IndexingContext('p1', 'running-job', '/tmp/x'))

        with pytest.raises(IndexingInProgressError):
            await engine.start_incremental_indexing('p1', project.git_repo)

    @pytest.mark.asyncio
    async def test_status_snapshot(self):
        registry = JobRegistry()
        context = IndexingContext('p1', 'j1', '/tmp/x', total_files=4, processed_files=1)
        await registry.register(context)

        status = registry.status('p1')
        assert status['progress'] == 25
        assert status['cancel_requested'] is False

        evicted = await registry.evict('p1')
        assert evicted is context
        assert context.cancelled
        assert registry.status('p1') is None


class TestFullReindex:
    @pytest.mark.asyncio
    async def test_clears_vectors_first(self, engine_factory, mock_gateway, project):
        engine = engine_factory(files={'a.py': 'a = 1\n'})

        result = await engine.full_reindex('p1', project.git_repo, 'main', triggered_by=TriggerType.MANUAL)

        assert result['success'] is True
        mock_gateway.delete_all_project_vectors.assert_awaited_once_with('p1')
        assert result['outcome']['files_processed'] == 1

    @pytest.mark.asyncio
    async def test_unknown_project(self, engine_factory):
        result = await engine_factory(files={}).full_reindex('missing', 'https://example.com/x.git')
        assert result['success'] is False
        assert 'not found' in result['message']


class TestScheduledIndexing:
    @pytest.mark.asyncio
    async def test_up_to_date(self, engine_factory, project_store, project):
        await project_store.update_project('p1', last_indexed_commit='a' * 40)
        engine = engine_factory(files={})

        with patch('pipelines.indexing.remote_head', AsyncMock(return_value='a' * 40)):
            result = await engine.scheduled_incremental_indexing('p1', project.git_repo)

        assert result.success
        assert result.action == 'no_changes'

    @pytest.mark.asyncio
    async def test_new_commits_run_incremental(self, engine_factory, mock_gateway, project_store, project):
        await project_store.update_project('p1', last_indexed_commit='a' * 40)
        engine = engine_factory(files={'a.py': 'a = 1\n'}, commit='b' * 40,
                                diff=GitDiffResult(modified=['a.py']))

        with patch('pipelines.indexing.remote_head', AsyncMock(return_value='b' * 40)):
            result = await engine.scheduled_incremental_indexing('p1', project.git_repo)

        assert result.action == 'incremental_index'
        job = await project_store.get_latest_job('p1')
        assert job.triggered_by == TriggerType.SCHEDULED.value
        assert (await project_store.get_project('p1')).last_indexed_commit == 'b' * 40

    @pytest.mark.asyncio
    async def test_missing_branch_reports_error(self, engine_factory, project):
        engine = engine_factory(files={})
        with patch('pipelines.indexing.remote_head', AsyncMock(return_value=None)):
            result = await engine.scheduled_incremental_indexing('p1', project.git_repo, 'nope')

        assert result.success is False
        assert result.action == 'error'


@pytest.mark.asyncio
async def test_progress_is_visible_while_running(engine_factory, mock_gateway, project):
    """The live status reflects the file currently being processed."""
    engine = engine_factory(files={'a.py': 'a = 1\n', 'b.py': 'b = 2\n'})
    release = asyncio.Event()
    snapshots = []

    async def slow_ingest(*args, **kwargs):
        snapshots.append(engine.get_indexing_status('p1'))
        if len(snapshots) == 1:
            await release.wait()
        return ingest_result()

    mock_gateway.ingest.side_effect = slow_ingest
    run = asyncio.create_task(engine.start_incremental_indexing('p1', project.git_repo))
    while not snapshots:
        await asyncio.sleep(0.01)
    release.set()
    outcome = await run

    assert snapshots[0]['status'] == 'RUNNING'
    assert snapshots[0]['total_files'] == 2
    assert snapshots[1]['processed_files'] == 1
    assert outcome.status == JobStatus.COMPLETED
    assert engine.get_indexing_status('p1') is None
