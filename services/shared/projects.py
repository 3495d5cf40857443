"""Project and indexing-job persistence.

Sessions are synchronous SQLAlchemy sessions; the async methods run them in
the default executor so callers on the event loop never block on the
database.
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .errors import ProjectNotFoundError
from .models import Base, IndexingJob, IndexStatus, JobStatus, Project, TriggerType, utcnow

logger = logging.getLogger(__name__)

T = TypeVar('T')

PROJECT_FIELDS = {
    'name', 'git_repo', 'index_status', 'index_progress', 'indexed_at', 'file_count',
    'vector_count', 'last_indexed_commit', 'last_indexed_branch', 'scheduled_indexing_enabled',
    'scheduled_indexing_branch', 'scheduled_indexing_interval', 'scheduled_indexing_last_run',
}

JOB_PROGRESS_FIELDS = (
    'progress', 'current_file', 'total_files', 'processed_files', 'error_count',
    'vectors_added', 'error_message',
)

# Job status -> project index status
PROJECT_STATUS_FOR_JOB = {
    JobStatus.COMPLETED: IndexStatus.COMPLETED,
    JobStatus.FAILED: IndexStatus.ERROR,
    JobStatus.CANCELLED: IndexStatus.IDLE,
}


def _detach(session: Session, instance):
    if instance is not None:
        session.refresh(instance)
        session.expunge(instance)
    return instance


class SessionRunner:
    """Runs a sync function with a fresh session in the default executor."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def run(self, func: Callable[..., T], *args, **kwargs) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._call, func, *args, **kwargs))

    def _call(self, func: Callable[..., T], *args, **kwargs) -> T:
        with self.session_factory() as session:
            try:
                result = func(session, *args, **kwargs)
                session.commit()
            except Exception:
                session.rollback()
                raise
            if isinstance(result, list):
                for item in result:
                    if isinstance(item, Base):
                        _detach(session, item)
                return result
            if isinstance(result, Base):
                return _detach(session, result)
            return result


class ProjectStore(SessionRunner):
    """Projects and their indexing jobs."""

    # Projects

    async def create_project(self, name: str, git_repo: str, project_id: Optional[str] = None,
                             **fields: Any) -> Project:
        def _create(session: Session) -> Project:
            project = Project(name=name, git_repo=git_repo, **self._project_fields(fields))
            if project_id:
                project.id = project_id
            session.add(project)
            session.flush()
            return project

        project = await self.run(_create)
        logger.info(f"Created project {project.id} ({name})")
        return project

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self.run(lambda session: session.get(Project, project_id))

    async def list_projects(self) -> List[Project]:
        return await self.run(
            lambda session: list(session.scalars(select(Project).order_by(Project.created_at)))
        )

    async def update_project(self, project_id: str, **fields: Any) -> Project:
        def _update(session: Session) -> Project:
            project = session.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            for key, value in self._project_fields(fields).items():
                setattr(project, key, value.value if isinstance(value, IndexStatus) else value)
            return project

        return await self.run(_update)

    async def delete_project(self, project_id: str) -> bool:
        def _delete(session: Session) -> bool:
            project = session.get(Project, project_id)
            if project is None:
                return False
            session.delete(project)
            return True

        deleted = await self.run(_delete)
        if deleted:
            logger.info(f"Deleted project {project_id}")
        return deleted

    async def list_scheduled_projects(self) -> List[Project]:
        return await self.run(lambda session: list(session.scalars(
            select(Project).where(Project.scheduled_indexing_enabled.is_(True))
        )))

    async def record_index_result(self, project_id: str, commit: Optional[str], branch: Optional[str],
                                  file_count: int, vector_count: int) -> Project:
        """Advance the recorded revision once a run's batch has completed."""
        return await self.update_project(
            project_id,
            last_indexed_commit=commit,
            last_indexed_branch=branch,
            file_count=file_count,
            vector_count=vector_count,
            indexed_at=utcnow(),
        )

    @staticmethod
    def _project_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - PROJECT_FIELDS
        if unknown:
            raise ValueError(f"Unknown project fields: {', '.join(sorted(unknown))}")
        return fields

    # Indexing jobs

    async def start_indexing_job(self, project_id: str, branch: str = 'main', full_reindex: bool = False,
                                 triggered_by: TriggerType = TriggerType.MANUAL,
                                 job_id: Optional[str] = None) -> IndexingJob:
        """Create a pending job, cancelling any pending or running job of the project."""
        def _start(session: Session) -> IndexingJob:
            project = session.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)

            stale = session.scalars(select(IndexingJob).where(
                IndexingJob.project_id == project_id,
                IndexingJob.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
            )).all()
            now = utcnow()
            for job in stale:
                job.status = JobStatus.CANCELLED.value
                job.completed_at = now

            job = IndexingJob(
                project_id=project_id,
                branch=branch,
                full_reindex=full_reindex,
                triggered_by=TriggerType(triggered_by).value,
                status=JobStatus.PENDING.value,
            )
            if job_id:
                existing = session.get(IndexingJob, job_id)
                if existing is not None:
                    session.delete(existing)
                    session.flush()
                job.id = job_id
            session.add(job)

            project.index_status = IndexStatus.INDEXING.value
            project.index_progress = 0
            session.flush()
            return job

        return await self.run(_start)

    async def update_indexing_progress(self, job_id: str, status: Optional[JobStatus] = None,
                                       **progress: Any) -> Optional[IndexingJob]:
        """Update a job and mirror its status and progress onto the project."""
        unknown = set(progress) - set(JOB_PROGRESS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown job fields: {', '.join(sorted(unknown))}")

        def _update(session: Session) -> Optional[IndexingJob]:
            job = session.get(IndexingJob, job_id)
            if job is None:
                logger.warning(f"Indexing job {job_id} not found")
                return None

            for key, value in progress.items():
                if value is not None:
                    setattr(job, key, value)

            project = session.get(Project, job.project_id)
            now = utcnow()
            if status is not None:
                job_status = JobStatus(status)
                job.status = job_status.value
                if job_status == JobStatus.RUNNING and job.started_at is None:
                    job.started_at = now
                if job_status.is_terminal:
                    job.completed_at = now
                if project is not None:
                    project.index_status = PROJECT_STATUS_FOR_JOB.get(job_status, IndexStatus.INDEXING).value
                    if job_status == JobStatus.COMPLETED:
                        project.indexed_at = now

            if project is not None and progress.get('progress') is not None:
                project.index_progress = progress['progress']
            return job

        return await self.run(_update)

    async def get_indexing_job(self, job_id: str) -> Optional[IndexingJob]:
        return await self.run(lambda session: session.get(IndexingJob, job_id))

    async def get_latest_job(self, project_id: str) -> Optional[IndexingJob]:
        return await self.run(lambda session: session.scalars(
            select(IndexingJob)
            .where(IndexingJob.project_id == project_id)
            .order_by(IndexingJob.created_at.desc())
            .limit(1)
        ).first())

    async def list_jobs(self, project_id: str, limit: int = 20) -> List[IndexingJob]:
        return await self.run(lambda session: list(session.scalars(
            select(IndexingJob)
            .where(IndexingJob.project_id == project_id)
            .order_by(IndexingJob.created_at.desc())
            .limit(limit)
        )))

    async def delete_jobs_older_than(self, cutoff) -> int:
        """Remove finished job records created before ``cutoff``."""
        def _purge(session: Session) -> int:
            jobs = session.scalars(select(IndexingJob).where(
                IndexingJob.created_at < cutoff,
                IndexingJob.status.in_([s.value for s in JobStatus if s.is_terminal]),
            )).all()
            for job in jobs:
                session.delete(job)
            return len(jobs)

        return await self.run(_purge)
