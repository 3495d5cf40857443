"""Processors for the indexing, scheduled-indexing and cleanup queues."""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from indexer.memory import GLOBAL_SCOPE, MemoryGateway
from pipelines.indexing import IndexingEngine
from server.jobs import QUEUE_CLEANUP, QUEUE_INDEXING, QUEUE_NAMES, QUEUE_SCHEDULED_INDEXING, QueueJob, QueueManager
from services.shared.errors import ProjectNotFoundError
from services.shared.models import IndexStatus, JobStatus, TriggerType, utcnow
from services.shared.projects import ProjectStore

logger = logging.getLogger(__name__)

# Indexing job rows older than this are purged by ``expired_jobs`` cleanup.
JOB_HISTORY_RETENTION = timedelta(days=7)


class JobHandlers:
    """Binds the queue processors to the services they drive."""

    def __init__(self, engine: IndexingEngine, projects: ProjectStore, gateway: MemoryGateway,
                 manager: Optional[QueueManager] = None):
        self.engine = engine
        self.projects = projects
        self.gateway = gateway
        self.manager = manager

    def processors(self) -> Dict[str, Any]:
        return {
            QUEUE_INDEXING: self.process_indexing_job,
            QUEUE_SCHEDULED_INDEXING: self.process_scheduled_indexing_job,
            QUEUE_CLEANUP: self.process_cleanup_job,
        }

    async def process_indexing_job(self, job: QueueJob) -> Dict[str, Any]:
        """Run a queued full or incremental index; failures are persisted then re-raised."""
        data = job.data
        project_id = data['project_id']
        job_id = data.get('job_id')
        branch = data.get('branch') or 'main'
        trigger = TriggerType(data.get('triggered_by', TriggerType.MANUAL.value))

        logger.info(f"Processing indexing job {job.id} for project {project_id}")
        try:
            if job_id:
                await self.projects.update_indexing_progress(job_id, JobStatus.RUNNING, progress=0)

            project = await self.projects.get_project(project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)

            if data.get('full_reindex'):
                result = await self.engine.full_reindex(project_id, project.git_repo, branch, job_id, trigger)
                outcome = result.get('outcome')
                # Cancelled runs return normally; only failures go back to the queue.
                if outcome is None or outcome['status'] == JobStatus.FAILED.value:
                    raise RuntimeError(result['message'])
            else:
                outcome = (await self.engine.start_incremental_indexing(
                    project_id, project.git_repo, 'HEAD', branch, job_id, trigger,
                )).to_dict()

            logger.info(f"Indexing job {job.id} completed: {outcome}")
            return outcome
        except Exception as e:
            logger.error(f"Indexing job {job.id} failed: {e}")
            if job_id:
                await self.projects.update_indexing_progress(job_id, JobStatus.FAILED, error_message=str(e))
            raise

    async def process_scheduled_indexing_job(self, job: QueueJob) -> Dict[str, Any]:
        """Check a project for new commits; never raises."""
        project_id = job.data['project_id']
        branch = job.data.get('branch') or 'main'

        logger.info(f"Processing scheduled indexing job {job.id} for project {project_id}")
        try:
            project = await self.projects.get_project(project_id)
            if project is None:
                logger.warning(f"Project {project_id} not found, skipping scheduled indexing")
                return {'success': False, 'message': 'Project not found'}

            if not project.scheduled_indexing_enabled:
                logger.info(f"Scheduled indexing disabled for project {project_id}, skipping")
                return {'success': False, 'message': 'Scheduled indexing disabled'}

            if project.index_status == IndexStatus.INDEXING.value:
                logger.info(f"Project {project_id} is already being indexed, skipping scheduled run")
                return {'success': False, 'message': 'Already indexing'}

            result = await self.engine.scheduled_incremental_indexing(project_id, project.git_repo, branch)
            await self.projects.update_project(project_id, scheduled_indexing_last_run=utcnow())
            logger.info(f"Scheduled indexing for project {project_id}: {result.message}")
            return result.to_dict()
        except Exception as e:
            logger.error(f"Scheduled indexing job {job.id} failed: {e}")
            return {'success': False, 'message': f"Error: {e}"}

    async def process_cleanup_job(self, job: QueueJob) -> Dict[str, Any]:
        cleanup_type = job.data.get('type')
        target_id = job.data.get('target_id')

        logger.info(f"Processing cleanup job {job.id}: {cleanup_type}")
        if cleanup_type == 'expired_jobs':
            details = await self._clean_expired_jobs()
        elif cleanup_type == 'failed_vectors':
            details = await self._clean_orphaned_vectors()
        elif cleanup_type == 'project_cleanup':
            details = await self._clean_project(target_id)
        else:
            logger.warning(f"Unknown cleanup type: {cleanup_type}")
            return {'success': False, 'message': 'Unknown cleanup type'}

        return {'success': True, 'message': f"Cleanup {cleanup_type} completed", **details}

    async def _clean_expired_jobs(self) -> Dict[str, Any]:
        removed_rows = await self.projects.delete_jobs_older_than(utcnow() - JOB_HISTORY_RETENTION)
        removed_queued = 0
        if self.manager is not None:
            for queue in QUEUE_NAMES:
                removed_queued += await self.manager.clean_queue(queue)
        logger.info(f"Removed {removed_rows} expired job records and {removed_queued} finished queue jobs")
        return {'removed_jobs': removed_rows, 'removed_queue_jobs': removed_queued}

    async def _clean_orphaned_vectors(self) -> Dict[str, Any]:
        """Drop vectors whose project no longer exists."""
        known = {project.id for project in await self.projects.list_projects()} | {GLOBAL_SCOPE}
        deleted = 0
        orphaned = [project_id for project_id in await self.gateway.list_projects() if project_id not in known]
        for project_id in orphaned:
            result = await self.gateway.delete_all_project_vectors(project_id)
            deleted += result.get('deleted_count', 0)
        logger.info(f"Removed {deleted} vectors from {len(orphaned)} orphaned projects")
        return {'orphaned_projects': orphaned, 'deleted_count': deleted}

    async def _clean_project(self, project_id: Optional[str]) -> Dict[str, Any]:
        if not project_id:
            return {'deleted_count': 0}
        logger.info(f"Cleaning up resources for project {project_id}")
        result = await self.gateway.delete_all_project_vectors(project_id)
        if self.manager is not None:
            await self.manager.cancel_existing_project_job(project_id)
            await self.manager.remove_scheduled_indexing_job(project_id)
        return {'deleted_count': result.get('deleted_count', 0)}
