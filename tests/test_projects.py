"""Tests for project and indexing-job persistence."""

import pytest

from services.shared.errors import ProjectNotFoundError
from services.shared.models import IndexStatus, JobStatus


class TestProjects:
    @pytest.mark.asyncio
    async def test_create_and_update(self, project_store, project):
        updated = await project_store.update_project('p1', scheduled_indexing_enabled=True,
                                                     index_status=IndexStatus.COMPLETED)

        assert updated.index_status == IndexStatus.COMPLETED.value
        assert [p.id for p in await project_store.list_scheduled_projects()] == ['p1']

    @pytest.mark.asyncio
    async def test_unknown_fields_are_rejected(self, project_store, project):
        with pytest.raises(ValueError, match='colour'):
            await project_store.update_project('p1', colour='blue')

    @pytest.mark.asyncio
    async def test_missing_project(self, project_store):
        with pytest.raises(ProjectNotFoundError):
            await project_store.update_project('missing', name='x')
        with pytest.raises(ProjectNotFoundError):
            await project_store.start_indexing_job('missing')
        assert await project_store.delete_project('missing') is False


class TestIndexingJobs:
    @pytest.mark.asyncio
    async def test_new_job_cancels_unfinished_ones(self, project_store, project):
        first = await project_store.start_indexing_job('p1')
        await project_store.update_indexing_progress(first.id, JobStatus.RUNNING)

        second = await project_store.start_indexing_job('p1', branch='dev')

        assert (await project_store.get_indexing_job(first.id)).status == JobStatus.CANCELLED.value
        assert second.status == JobStatus.PENDING.value
        assert (await project_store.get_project('p1')).index_status == IndexStatus.INDEXING.value

    @pytest.mark.asyncio
    async def test_progress_is_mirrored_on_project(self, project_store, project):
        job = await project_store.start_indexing_job('p1', job_id='j1')

        running = await project_store.update_indexing_progress('j1', JobStatus.RUNNING, progress=40,
                                                               current_file='src/a.py')
        assert running.started_at is not None
        assert (await project_store.get_project('p1')).index_progress == 40

        done = await project_store.update_indexing_progress(job.id, JobStatus.COMPLETED, progress=100)
        assert done.completed_at is not None
        stored = await project_store.get_project('p1')
        assert stored.index_status == IndexStatus.COMPLETED.value
        assert stored.indexed_at is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [
        (JobStatus.FAILED, IndexStatus.ERROR),
        (JobStatus.CANCELLED, IndexStatus.IDLE),
    ])
    async def test_terminal_statuses(self, project_store, project, status, expected):
        await project_store.start_indexing_job('p1', job_id='j1')

        await project_store.update_indexing_progress('j1', status, error_message='stopped')

        assert (await project_store.get_project('p1')).index_status == expected.value
        assert (await project_store.get_indexing_job('j1')).error_message == 'stopped'

    @pytest.mark.asyncio
    async def test_unknown_progress_fields(self, project_store, project):
        await project_store.start_indexing_job('p1', job_id='j1')
        with pytest.raises(ValueError):
            await project_store.update_indexing_progress('j1', speed=3)

    @pytest.mark.asyncio
    async def test_missing_job_is_ignored(self, project_store):
        assert await project_store.update_indexing_progress('nope', JobStatus.RUNNING) is None

    @pytest.mark.asyncio
    async def test_latest_job(self, project_store, project):
        assert await project_store.get_latest_job('p1') is None
        job = await project_store.start_indexing_job('p1', job_id='j1')
        assert (await project_store.get_latest_job('p1')).id == job.id
