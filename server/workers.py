"""Queue workers: claim jobs, run a processor, record the outcome."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from config.settings import QueueConfig
from server.jobs import QueueJob, QueueManager

logger = logging.getLogger(__name__)

Processor = Callable[[QueueJob], Awaitable[Any]]


class Worker:
    """Runs ``processor`` for jobs of one queue with bounded concurrency.

    Each slot is its own loop; a job exception is recorded on the job (retry
    or failure) and the loop continues with the next claim.
    """

    def __init__(self, queue_name: str, processor: Processor, manager: QueueManager,
                 concurrency: int = 1, config: Optional[QueueConfig] = None):
        self.queue_name = queue_name
        self.processor = processor
        self.manager = manager
        self.concurrency = max(1, concurrency)
        self.config = config or manager.config
        self._tasks: List[asyncio.Task] = []
        self._active: Set[str] = set()
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def active_jobs(self) -> Set[str]:
        return set(self._active)

    def start(self):
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._slot(i), name=f"worker-{self.queue_name}-{i}")
            for i in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._stalled_loop(), name=f"worker-{self.queue_name}-stalled"))
        logger.info(f"Worker for {self.queue_name} started with concurrency {self.concurrency}")

    async def stop(self, timeout: float = 30.0):
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info(f"Worker for {self.queue_name} stopped")

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _slot(self, index: int):
        while not self._stopping.is_set():
            try:
                job = await self.manager.claim(self.queue_name)
            except Exception as e:
                logger.error(f"Worker {self.queue_name}[{index}] failed to claim a job: {e}")
                await self._sleep(self.config.poll_interval)
                continue

            if job is None:
                await self._sleep(self.config.poll_interval)
                continue
            await self.process(job)

    async def process(self, job: QueueJob) -> bool:
        """Run one claimed job; returns True when it completed."""
        self._active.add(job.id)
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            result = await self.processor(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retrying = await self._record_failure(job, e)
            if retrying:
                logger.warning(f"Job {job.id} failed on attempt {job.attempts_made}, retrying: {e}")
            else:
                logger.error(f"Job {job.id} failed after {job.attempts_made} attempts: {e}")
            return False
        else:
            await self._record(self.manager.mark_completed, job, result)
            logger.info(f"Job {job.id} completed")
            return True
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._active.discard(job.id)

    async def _record_failure(self, job: QueueJob, error: Exception) -> bool:
        try:
            return await self.manager.mark_failed(job, str(error) or type(error).__name__)
        except Exception as e:
            logger.error(f"Could not record failure of job {job.id}: {e}")
            return False

    async def _record(self, transition, job: QueueJob, *args):
        try:
            await transition(job, *args)
        except Exception as e:
            logger.error(f"Could not record outcome of job {job.id}: {e}")

    async def _heartbeat(self, job: QueueJob):
        interval = max(self.config.stalled_after / 4, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.manager.heartbeat(job)
            except Exception as e:
                logger.warning(f"Heartbeat for job {job.id} failed: {e}")

    async def _stalled_loop(self):
        interval = max(self.config.stalled_after / 2, self.config.poll_interval)
        while not self._stopping.is_set():
            await self._sleep(interval)
            if self._stopping.is_set():
                break
            try:
                stalled = await self.manager.requeue_stalled(self.queue_name, skip_ids=self._active)
                for job in stalled:
                    logger.warning(f"Job {job.id} stalled in {self.queue_name}")
            except Exception as e:
                logger.error(f"Stalled job check for {self.queue_name} failed: {e}")


class WorkerPool:
    """One worker per queue, concurrency taken from the queue config."""

    def __init__(self, manager: QueueManager, processors: Dict[str, Processor],
                 config: Optional[QueueConfig] = None):
        self.manager = manager
        self.config = config or manager.config
        self.workers: Dict[str, Worker] = {
            name: Worker(name, processor, manager, self.config.concurrency.get(name, 1), self.config)
            for name, processor in processors.items()
        }

    def start(self):
        for worker in self.workers.values():
            worker.start()
        logger.info("All workers started successfully")

    async def stop(self, timeout: float = 30.0):
        await asyncio.gather(*(worker.stop(timeout) for worker in self.workers.values()))
        logger.info("All workers closed successfully")

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                'running': worker.running,
                'concurrency': worker.concurrency,
                'active_jobs': sorted(worker.active_jobs),
            }
            for name, worker in self.workers.items()
        }
