"""Durable job queue for memfoundry.

Jobs live in named queues (``indexing``, ``scheduled-indexing``, ``cleanup``)
kept in Redis, or in process memory when Redis is unavailable. Recurring
project checks are APScheduler interval jobs that push a fresh job onto the
``scheduled-indexing`` queue on every tick.
"""

import asyncio
import functools
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import redis
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.redis import RedisJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import QueueConfig, RedisConfig
from observability.prometheus_metrics import record_queue_event
from services.shared.errors import QueueError

logger = logging.getLogger(__name__)

QUEUE_INDEXING = 'indexing'
QUEUE_SCHEDULED_INDEXING = 'scheduled-indexing'
QUEUE_CLEANUP = 'cleanup'
QUEUE_NAMES = (QUEUE_INDEXING, QUEUE_SCHEDULED_INDEXING, QUEUE_CLEANUP)

CLEANUP_TYPES = ('expired_jobs', 'failed_vectors', 'project_cleanup')


class JobPriority(IntEnum):
    HIGH = 10
    NORMAL = 5
    LOW = 1


class QueueJobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_pending(self) -> bool:
        return self in (QueueJobState.WAITING, QueueJobState.DELAYED, QueueJobState.ACTIVE)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def project_job_id(project_id: str) -> str:
    return f"project-{project_id}"


def scheduled_job_id(project_id: str) -> str:
    return f"scheduled-{project_id}"


@dataclass
class QueueJob:
    """One unit of work in a queue."""
    id: str
    queue: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: int = JobPriority.NORMAL
    state: QueueJobState = QueueJobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_ms: int = 2000
    created_at: datetime = field(default_factory=_now)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    run_at: Optional[datetime] = None
    progress: int = 0
    result: Optional[Any] = None
    failed_reason: Optional[str] = None

    _DATETIME_FIELDS = ('created_at', 'processed_at', 'finished_at', 'heartbeat_at', 'run_at')

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or _now()) - self.created_at).total_seconds()

    def order_score(self) -> float:
        """Sort key for waiting jobs: higher priority first, then FIFO."""
        return -int(self.priority) * 1e13 + _ms(self.created_at)

    def next_backoff(self) -> timedelta:
        return timedelta(milliseconds=self.backoff_ms * 2 ** max(self.attempts_made - 1, 0))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['state'] = self.state.value
        data['priority'] = int(self.priority)
        for name in self._DATETIME_FIELDS:
            if data[name]:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueJob':
        data = dict(data)
        data['state'] = QueueJobState(data.get('state', QueueJobState.WAITING.value))
        for name in cls._DATETIME_FIELDS:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        return cls(**data)


class QueueBackend:
    """Storage contract shared by the Redis and in-memory backends."""

    async def add(self, job: QueueJob) -> None:
        raise NotImplementedError

    async def get(self, queue: str, job_id: str) -> Optional[QueueJob]:
        raise NotImplementedError

    async def save(self, job: QueueJob, previous_state: Optional[QueueJobState] = None) -> None:
        raise NotImplementedError

    async def remove(self, queue: str, job_id: str) -> bool:
        raise NotImplementedError

    async def claim(self, queue: str) -> Optional[QueueJob]:
        """Promote due delayed jobs, then move the next waiting job to active."""
        raise NotImplementedError

    async def list_jobs(self, queue: str, state: QueueJobState) -> List[QueueJob]:
        raise NotImplementedError

    async def count(self, queue: str, state: QueueJobState) -> int:
        raise NotImplementedError

    async def trim(self, queue: str, state: QueueJobState, keep: int) -> int:
        """Drop the oldest jobs in ``state`` beyond the newest ``keep``."""
        raise NotImplementedError

    async def set_paused(self, queue: str, paused: bool) -> None:
        raise NotImplementedError

    async def is_paused(self, queue: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryQueueBackend(QueueBackend):
    """Process-local queues; used when Redis is unavailable and in tests."""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, QueueJob]] = {name: {} for name in QUEUE_NAMES}
        self._paused: Dict[str, bool] = {}
        self._lock = asyncio.Lock()

    def _queue(self, queue: str) -> Dict[str, QueueJob]:
        return self._jobs.setdefault(queue, {})

    async def add(self, job: QueueJob) -> None:
        self._queue(job.queue)[job.id] = job

    async def get(self, queue: str, job_id: str) -> Optional[QueueJob]:
        return self._queue(queue).get(job_id)

    async def save(self, job: QueueJob, previous_state: Optional[QueueJobState] = None) -> None:
        self._queue(job.queue)[job.id] = job

    async def remove(self, queue: str, job_id: str) -> bool:
        return self._queue(queue).pop(job_id, None) is not None

    async def claim(self, queue: str) -> Optional[QueueJob]:
        async with self._lock:
            now = _now()
            jobs = self._queue(queue)
            for job in jobs.values():
                if job.state == QueueJobState.DELAYED and job.run_at and job.run_at <= now:
                    job.state = QueueJobState.WAITING
                    job.run_at = None

            waiting = [job for job in jobs.values() if job.state == QueueJobState.WAITING]
            if not waiting:
                return None
            job = min(waiting, key=lambda j: j.order_score())
            job.state = QueueJobState.ACTIVE
            job.processed_at = now
            job.heartbeat_at = now
            return job

    async def list_jobs(self, queue: str, state: QueueJobState) -> List[QueueJob]:
        return [job for job in self._queue(queue).values() if job.state == state]

    async def count(self, queue: str, state: QueueJobState) -> int:
        return len(await self.list_jobs(queue, state))

    async def trim(self, queue: str, state: QueueJobState, keep: int) -> int:
        jobs = sorted(
            await self.list_jobs(queue, state),
            key=lambda j: j.finished_at or j.created_at,
            reverse=True,
        )
        stale = jobs[keep:]
        for job in stale:
            self._queue(queue).pop(job.id, None)
        return len(stale)

    async def set_paused(self, queue: str, paused: bool) -> None:
        self._paused[queue] = paused

    async def is_paused(self, queue: str) -> bool:
        return self._paused.get(queue, False)


class RedisQueueBackend(QueueBackend):
    """Queues in Redis: one hash per job plus one sorted set per state.

    Waiting jobs are scored by :meth:`QueueJob.order_score`, delayed jobs by
    their due time and finished jobs by completion time.
    """

    def __init__(self, client: redis.Redis, prefix: str = 'memfoundry'):
        self.client = client
        self.prefix = prefix

    async def _call(self, func: Callable, *args, **kwargs) -> Any:
        try:
            return await asyncio.get_event_loop().run_in_executor(
                None, functools.partial(func, *args, **kwargs)
            )
        except redis.RedisError as e:
            raise QueueError(str(e), operation=getattr(func, '__name__', 'redis'))

    def _job_key(self, queue: str, job_id: str) -> str:
        return f"{self.prefix}:queue:{queue}:job:{job_id}"

    def _state_key(self, queue: str, state: QueueJobState) -> str:
        return f"{self.prefix}:queue:{queue}:{state.value}"

    def _paused_key(self, queue: str) -> str:
        return f"{self.prefix}:queue:{queue}:paused"

    @staticmethod
    def _score(job: QueueJob) -> float:
        if job.state == QueueJobState.WAITING:
            return job.order_score()
        if job.state == QueueJobState.DELAYED and job.run_at:
            return _ms(job.run_at)
        return _ms(job.finished_at or job.processed_at or job.created_at)

    async def add(self, job: QueueJob) -> None:
        await self.save(job)

    async def get(self, queue: str, job_id: str) -> Optional[QueueJob]:
        payload = await self._call(self.client.hget, self._job_key(queue, job_id), 'payload')
        if not payload:
            return None
        return QueueJob.from_dict(json.loads(payload))

    async def save(self, job: QueueJob, previous_state: Optional[QueueJobState] = None) -> None:
        def _save():
            pipe = self.client.pipeline()
            pipe.hset(self._job_key(job.queue, job.id), mapping={
                'payload': json.dumps(job.to_dict(), default=str),
                'state': job.state.value,
            })
            for state in QueueJobState:
                if state != job.state:
                    pipe.zrem(self._state_key(job.queue, state), job.id)
            pipe.zadd(self._state_key(job.queue, job.state), {job.id: self._score(job)})
            pipe.execute()

        await self._call(_save)

    async def remove(self, queue: str, job_id: str) -> bool:
        def _remove() -> bool:
            pipe = self.client.pipeline()
            pipe.delete(self._job_key(queue, job_id))
            for state in QueueJobState:
                pipe.zrem(self._state_key(queue, state), job_id)
            return bool(pipe.execute()[0])

        return await self._call(_remove)

    async def _promote_delayed(self, queue: str) -> None:
        due = await self._call(
            self.client.zrangebyscore, self._state_key(queue, QueueJobState.DELAYED), 0, _ms(_now())
        )
        for job_id in due:
            removed = await self._call(self.client.zrem, self._state_key(queue, QueueJobState.DELAYED), job_id)
            if not removed:
                continue
            job = await self.get(queue, job_id)
            if job is None:
                continue
            job.state = QueueJobState.WAITING
            job.run_at = None
            await self.save(job)

    async def claim(self, queue: str) -> Optional[QueueJob]:
        await self._promote_delayed(queue)
        popped = await self._call(self.client.zpopmin, self._state_key(queue, QueueJobState.WAITING), 1)
        if not popped:
            return None
        job_id = popped[0][0]
        job = await self.get(queue, job_id)
        if job is None:
            return None
        now = _now()
        job.state = QueueJobState.ACTIVE
        job.processed_at = now
        job.heartbeat_at = now
        await self.save(job)
        return job

    async def list_jobs(self, queue: str, state: QueueJobState) -> List[QueueJob]:
        job_ids = await self._call(self.client.zrange, self._state_key(queue, state), 0, -1)
        jobs = []
        for job_id in job_ids:
            job = await self.get(queue, job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def count(self, queue: str, state: QueueJobState) -> int:
        return await self._call(self.client.zcard, self._state_key(queue, state))

    async def trim(self, queue: str, state: QueueJobState, keep: int) -> int:
        # Oldest first; everything before the newest ``keep`` goes.
        stale = await self._call(self.client.zrange, self._state_key(queue, state), 0, -(keep + 1))
        for job_id in stale:
            await self.remove(queue, job_id)
        return len(stale)

    async def set_paused(self, queue: str, paused: bool) -> None:
        if paused:
            await self._call(self.client.set, self._paused_key(queue), '1')
        else:
            await self._call(self.client.delete, self._paused_key(queue))

    async def is_paused(self, queue: str) -> bool:
        return bool(await self._call(self.client.exists, self._paused_key(queue)))

    async def close(self) -> None:
        await self._call(self.client.close)


# Manager the APScheduler ticks push into; set by QueueManager.initialize().
_active_manager: Optional['QueueManager'] = None


async def scheduled_indexing_tick(project_id: str, branch: str, interval_minutes: int) -> None:
    """APScheduler entry point; must stay importable for the Redis job store."""
    if _active_manager is None:
        logger.warning(f"Scheduled tick for project {project_id} dropped: queue manager not running")
        return
    await _active_manager.add_job(
        QUEUE_SCHEDULED_INDEXING,
        'process-scheduled-indexing',
        {'project_id': project_id, 'branch': branch, 'interval': interval_minutes},
        priority=JobPriority.LOW,
    )


class QueueManager:
    """Queue operations plus the recurring-schedule registry."""

    def __init__(self, config: Optional[QueueConfig] = None, redis_config: Optional[RedisConfig] = None,
                 backend: Optional[QueueBackend] = None):
        self.config = config or QueueConfig()
        self.redis_config = redis_config or RedisConfig()
        self.backend = backend
        self.redis_client = None
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self, start_scheduler: bool = True):
        """Connect to Redis (falling back to memory) and start the scheduler."""
        global _active_manager
        redis_available = False

        if self.backend is None and self.config.use_redis:
            try:
                self.redis_client = redis.from_url(self.redis_config.url, decode_responses=True)
                await asyncio.get_event_loop().run_in_executor(None, self.redis_client.ping)
                self.backend = RedisQueueBackend(self.redis_client, self.redis_config.key_prefix)
                redis_available = True
                logger.info("Connected to Redis successfully")
            except Exception as e:
                logger.warning(f"Redis not available: {e}. Job queue will run in memory-only mode.")
                self.redis_client = None
        if self.backend is None:
            self.backend = MemoryQueueBackend()

        if start_scheduler:
            self.scheduler = self._build_scheduler(redis_available)
            self.scheduler.add_listener(self._schedule_executed, EVENT_JOB_EXECUTED)
            self.scheduler.add_listener(self._schedule_error, EVENT_JOB_ERROR)
            self.scheduler.start()

        _active_manager = self
        self._running = True
        logger.info(f"Queue manager initialized ({type(self.backend).__name__})")

    def _build_scheduler(self, redis_available: bool) -> AsyncIOScheduler:
        jobstores = {}
        if redis_available:
            parsed = urlparse(self.redis_config.url)
            jobstores['default'] = RedisJobStore(
                jobs_key=f"{self.redis_config.key_prefix}:apscheduler.jobs",
                run_times_key=f"{self.redis_config.key_prefix}:apscheduler.run_times",
                host=parsed.hostname or 'localhost',
                port=parsed.port or 6379,
                password=parsed.password,
                db=self.redis_config.scheduler_db,
            )
        return AsyncIOScheduler(
            jobstores=jobstores,
            executors={'default': AsyncIOExecutor()},
            job_defaults={'coalesce': True, 'max_instances': 1},
        )

    async def shutdown(self):
        global _active_manager
        self._running = False
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self.backend:
            await self.backend.close()
        if _active_manager is self:
            _active_manager = None
        logger.info("Queue manager shutdown complete")

    def _require_running(self):
        if not self._running:
            raise QueueError("Queue manager not initialized", operation="queue")

    # Jobs

    async def add_job(self, queue: str, name: str, data: Dict[str, Any],
                      priority: int = JobPriority.NORMAL, job_id: Optional[str] = None,
                      delay: float = 0) -> QueueJob:
        self._require_running()
        if queue not in QUEUE_NAMES:
            raise ValueError(f"Unknown queue: {queue}")

        job = QueueJob(
            id=job_id or uuid.uuid4().hex,
            queue=queue,
            name=name,
            data=data,
            priority=priority,
            max_attempts=self.config.attempts,
            backoff_ms=self.config.backoff_ms,
        )
        if delay > 0:
            job.state = QueueJobState.DELAYED
            job.run_at = job.created_at + timedelta(seconds=delay)
        await self.backend.add(job)
        record_queue_event(queue, job.state.value)
        logger.debug(f"Added job {job.id} to {queue} ({job.state.value})")
        return job

    async def add_indexing_job(self, data: Dict[str, Any], priority: int = JobPriority.NORMAL) -> QueueJob:
        """Add an indexing job keyed by project so each project has at most one in flight."""
        self._require_running()
        job_id = project_job_id(data['project_id'])

        existing = await self.backend.get(QUEUE_INDEXING, job_id)
        if existing is not None:
            if existing.state.is_pending:
                stalled = (existing.age_seconds() > self.config.stalled_after
                           and existing.state != QueueJobState.ACTIVE)
                if not stalled:
                    logger.info(
                        f"Indexing job already exists for project {data['project_id']}, "
                        f"skipping duplicate. Job state: {existing.state.value}"
                    )
                    return existing
                logger.info(f"Job {job_id} appears stuck ({existing.state.value}), replacing it")
            else:
                logger.info(f"Existing job {job_id} is {existing.state.value}, removing before creating a new one")
            await self.backend.remove(QUEUE_INDEXING, job_id)

        return await self.add_job(QUEUE_INDEXING, 'process-indexing', data, priority=priority, job_id=job_id)

    async def enqueue_indexing_job(self, project_id: str, job_id: str, branch: str = 'main',
                                   full_reindex: bool = False, trigger: str = 'MANUAL',
                                   priority: Optional[int] = None) -> QueueJob:
        if priority is None:
            priority = JobPriority.HIGH if trigger == 'MANUAL' else JobPriority.NORMAL
        return await self.add_indexing_job({
            'project_id': project_id,
            'job_id': job_id,
            'branch': branch,
            'full_reindex': full_reindex,
            'triggered_by': trigger,
        }, priority=priority)

    async def add_cleanup_job(self, cleanup_type: str, target_id: Optional[str] = None) -> QueueJob:
        if cleanup_type not in CLEANUP_TYPES:
            raise ValueError(f"Unknown cleanup type: {cleanup_type}")
        return await self.add_job(
            QUEUE_CLEANUP, 'process-cleanup', {'type': cleanup_type, 'target_id': target_id},
            priority=JobPriority.LOW, delay=self.config.cleanup_delay,
        )

    async def get_job(self, job_id: str, queue: str = QUEUE_INDEXING) -> Optional[QueueJob]:
        self._require_running()
        return await self.backend.get(queue, job_id)

    async def cancel_job(self, job_id: str, queue: str = QUEUE_INDEXING) -> bool:
        self._require_running()
        if queue not in QUEUE_NAMES:
            return False
        removed = await self.backend.remove(queue, job_id)
        if removed:
            logger.info(f"Removed job {job_id} from {queue}")
        return removed

    async def cancel_existing_project_job(self, project_id: str) -> bool:
        job = await self.get_job(project_job_id(project_id))
        if job is None or not job.state.is_pending:
            return False
        await self.backend.remove(QUEUE_INDEXING, job.id)
        logger.info(f"Cancelled existing indexing job for project {project_id}")
        return True

    async def get_active_project_job(self, project_id: str) -> Dict[str, Any]:
        job = await self.get_job(project_job_id(project_id))
        if job is None:
            return {'exists': False}
        return {'exists': True, 'state': job.state.value, 'data': job.data, 'progress': job.progress}

    # Lifecycle transitions, driven by workers

    async def mark_completed(self, job: QueueJob, result: Any = None) -> None:
        job.state = QueueJobState.COMPLETED
        job.attempts_made += 1
        job.finished_at = _now()
        job.progress = 100
        job.result = result
        await self.backend.save(job)
        record_queue_event(job.queue, job.state.value)
        await self.backend.trim(job.queue, QueueJobState.COMPLETED, self.config.remove_on_complete)

    async def mark_failed(self, job: QueueJob, reason: str) -> bool:
        """Record a failed attempt; returns True when a retry was scheduled."""
        job.attempts_made += 1
        job.failed_reason = reason
        if job.attempts_made < job.max_attempts:
            job.state = QueueJobState.DELAYED
            job.run_at = _now() + job.next_backoff()
            await self.backend.save(job)
            record_queue_event(job.queue, 'retried')
            return True

        job.state = QueueJobState.FAILED
        job.finished_at = _now()
        await self.backend.save(job)
        record_queue_event(job.queue, job.state.value)
        await self.backend.trim(job.queue, QueueJobState.FAILED, self.config.remove_on_fail)
        return False

    async def heartbeat(self, job: QueueJob) -> None:
        stored = await self.backend.get(job.queue, job.id)
        if stored is None or stored.state != QueueJobState.ACTIVE:
            return
        stored.heartbeat_at = _now()
        await self.backend.save(stored)

    async def requeue_stalled(self, queue: str, skip_ids: Optional[set] = None) -> List[QueueJob]:
        """Return active jobs whose worker stopped heartbeating to the waiting state."""
        now = _now()
        recovered = []
        for job in await self.backend.list_jobs(queue, QueueJobState.ACTIVE):
            if skip_ids and job.id in skip_ids:
                continue
            last_seen = job.heartbeat_at or job.processed_at or job.created_at
            if (now - last_seen).total_seconds() <= self.config.stalled_after:
                continue
            logger.warning(f"Job {job.id} in {queue} stalled, returning it to the queue")
            record_queue_event(queue, 'stalled')
            if await self.mark_failed(job, 'job stalled'):
                job.state = QueueJobState.WAITING
                job.run_at = None
                await self.backend.save(job)
            recovered.append(job)
        return recovered

    # Schedules

    async def add_scheduled_indexing_job(self, project_id: str, branch: str = 'main',
                                         interval_minutes: int = 60) -> str:
        self._require_running()
        if self.scheduler is None:
            raise QueueError("Scheduler not running", operation="schedule")
        schedule_id = scheduled_job_id(project_id)
        self.scheduler.add_job(
            scheduled_indexing_tick,
            'interval',
            minutes=interval_minutes,
            args=[project_id, branch, interval_minutes],
            id=schedule_id,
            replace_existing=True,
        )
        logger.info(f"Scheduled indexing for project {project_id} every {interval_minutes} minutes")
        return schedule_id

    async def remove_scheduled_indexing_job(self, project_id: str) -> bool:
        if self.scheduler is None:
            return False
        schedule_id = scheduled_job_id(project_id)
        if self.scheduler.get_job(schedule_id) is None:
            return False
        self.scheduler.remove_job(schedule_id)
        logger.info(f"Removed scheduled indexing for project {project_id}")
        return True

    def get_schedule(self, project_id: str) -> Optional[Dict[str, Any]]:
        if self.scheduler is None:
            return None
        job = self.scheduler.get_job(scheduled_job_id(project_id))
        if job is None:
            return None
        return {
            'id': job.id,
            'next_run_time': job.next_run_time.isoformat() if job.next_run_time else None,
            'interval_minutes': job.args[2] if len(job.args) > 2 else None,
            'branch': job.args[1] if len(job.args) > 1 else None,
        }

    # Queue administration

    async def get_queue_stats(self) -> Dict[str, Dict[str, Any]]:
        self._require_running()
        stats = {}
        for name in QUEUE_NAMES:
            try:
                stats[name] = {
                    'waiting': await self.backend.count(name, QueueJobState.WAITING),
                    'delayed': await self.backend.count(name, QueueJobState.DELAYED),
                    'active': await self.backend.count(name, QueueJobState.ACTIVE),
                    'completed': await self.backend.count(name, QueueJobState.COMPLETED),
                    'failed': await self.backend.count(name, QueueJobState.FAILED),
                    'paused': await self.backend.is_paused(name),
                }
            except QueueError as e:
                logger.error(f"Error getting stats for queue {name}: {e}")
                stats[name] = {'error': str(e)}
        return stats

    async def pause_queue(self, queue: str) -> bool:
        if queue not in QUEUE_NAMES:
            return False
        await self.backend.set_paused(queue, True)
        return True

    async def resume_queue(self, queue: str) -> bool:
        if queue not in QUEUE_NAMES:
            return False
        await self.backend.set_paused(queue, False)
        return True

    async def is_paused(self, queue: str) -> bool:
        return await self.backend.is_paused(queue)

    async def clean_queue(self, queue: str, grace: float = 86400) -> int:
        """Remove completed and failed jobs that finished more than ``grace`` seconds ago."""
        if queue not in QUEUE_NAMES:
            return 0
        cutoff = _now() - timedelta(seconds=grace)
        removed = 0
        for state in (QueueJobState.COMPLETED, QueueJobState.FAILED):
            for job in await self.backend.list_jobs(queue, state):
                if (job.finished_at or job.created_at) < cutoff:
                    removed += await self.backend.remove(queue, job.id)
        return removed

    async def claim(self, queue: str) -> Optional[QueueJob]:
        if await self.backend.is_paused(queue):
            return None
        job = await self.backend.claim(queue)
        if job is not None:
            record_queue_event(queue, job.state.value)
        return job

    def _schedule_executed(self, event):
        logger.debug(f"Schedule {event.job_id} fired")

    def _schedule_error(self, event):
        logger.error(f"Schedule {event.job_id} failed: {event.exception}")
