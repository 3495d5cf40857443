"""Tests for queue workers."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from server.jobs import QUEUE_CLEANUP, QUEUE_INDEXING, QueueJobState
from server.workers import Worker, WorkerPool


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestWorkerProcess:
    @pytest.mark.asyncio
    async def test_success_marks_completed(self, queue_manager):
        processor = AsyncMock(return_value={'success': True})
        worker = Worker(QUEUE_CLEANUP, processor, queue_manager)
        await queue_manager.add_job(QUEUE_CLEANUP, 'process-cleanup', {'type': 'expired_jobs'})
        job = await queue_manager.claim(QUEUE_CLEANUP)

        assert await worker.process(job) is True

        assert job.state == QueueJobState.COMPLETED
        assert job.result == {'success': True}
        assert worker.active_jobs == set()

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, queue_manager):
        worker = Worker(QUEUE_CLEANUP, AsyncMock(side_effect=RuntimeError("boom")), queue_manager)
        await queue_manager.add_job(QUEUE_CLEANUP, 'process-cleanup', {})
        job = await queue_manager.claim(QUEUE_CLEANUP)

        assert await worker.process(job) is False

        assert job.state == QueueJobState.DELAYED
        assert job.failed_reason == 'boom'


class TestWorkerLoop:
    @pytest.mark.asyncio
    async def test_failing_job_exhausts_attempts_and_loop_survives(self, queue_manager):
        """A job that always fails ends up failed; the next job still runs."""
        calls = []

        async def processor(job):
            calls.append(job.data['n'])
            if job.data['n'] == 1:
                raise RuntimeError("always fails")
            return job.data['n']

        worker = Worker(QUEUE_CLEANUP, processor, queue_manager)
        failing = await queue_manager.add_job(QUEUE_CLEANUP, 'process-cleanup', {'n': 1})
        worker.start()
        try:
            await wait_for(lambda: failing.state == QueueJobState.FAILED)
            healthy = await queue_manager.add_job(QUEUE_CLEANUP, 'process-cleanup', {'n': 2})
            await wait_for(lambda: healthy.state == QueueJobState.COMPLETED)
        finally:
            await worker.stop(timeout=1.0)

        assert calls == [1, 1, 1, 2]
        assert failing.attempts_made == queue_manager.config.attempts
        assert healthy.result == 2
        assert not worker.running

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, queue_manager):
        running = 0
        peak = 0
        done = 0
        release = asyncio.Event()

        async def processor(job):
            nonlocal running, peak, done
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1
            done += 1

        worker = Worker(QUEUE_INDEXING, processor, queue_manager, concurrency=2)
        for n in range(4):
            await queue_manager.add_job(QUEUE_INDEXING, 'process-indexing', {'project_id': f"p{n}"})
        worker.start()
        try:
            await wait_for(lambda: running == 2)
            await asyncio.sleep(0.05)
            assert peak == 2
            release.set()
            await wait_for(lambda: done == 4 and not worker.active_jobs)
        finally:
            await worker.stop(timeout=1.0)

        stats = await queue_manager.get_queue_stats()
        assert stats[QUEUE_INDEXING]['completed'] == 4


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_pool_status(self, queue_manager):
        pool = WorkerPool(queue_manager, {
            QUEUE_INDEXING: AsyncMock(return_value=None),
            QUEUE_CLEANUP: AsyncMock(return_value=None),
        })
        pool.start()
        try:
            status = pool.status()
            assert status[QUEUE_INDEXING]['concurrency'] == 2
            assert status[QUEUE_CLEANUP]['concurrency'] == 1
            assert all(s['running'] for s in status.values())
        finally:
            await pool.stop(timeout=1.0)

        assert not any(s['running'] for s in pool.status().values())
