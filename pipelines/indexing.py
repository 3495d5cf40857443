"""Git-aware repository indexing with progress tracking and cooperative cancellation.

A run materialises a working copy, decides which files to (re)ingest, feeds
them one at a time through the Memory Gateway and mirrors its progress onto
the durable job record. Cancellation is checked between files; the recorded
revision of a project only advances once a run's whole batch has completed.
"""

import asyncio
import os
import pathlib
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config.settings import IndexingConfig
from indexer.memory import MemoryGateway
from observability.logging import get_structured_logger
from observability.prometheus_metrics import record_indexing_file, record_indexing_job
from services.shared.errors import (
    IndexingCancelled,
    IndexingInProgressError,
    ProjectNotFoundError,
)
from services.shared.models import IndexingJob, JobStatus, TriggerType
from services.shared.projects import ProjectStore

from .file_filter import content_type_for_language, is_indexable_path, language_for_path, scan_files
from .git_ops import GitWorkingCopy, remote_head

logger = get_structured_logger(__name__)

PROJECT_SCOPE = 'project'


class CancellationToken:
    """Flag checked by a running job between file operations."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class IndexingContext:
    project_id: str
    job_id: str
    repo_path: str
    mode: str = 'full'
    token: CancellationToken = field(default_factory=CancellationToken)
    total_files: int = 0
    processed_files: int = 0
    vectors_added: int = 0
    error_count: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def progress(self) -> int:
        if self.total_files <= 0:
            return 0
        return round(self.processed_files / self.total_files * 100)

    def check_cancelled(self) -> None:
        if self.token.cancelled:
            raise IndexingCancelled(f"Indexing of project {self.project_id} was cancelled")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'project_id': self.project_id,
            'job_id': self.job_id,
            'status': 'RUNNING',
            'mode': self.mode,
            'progress': self.progress,
            'total_files': self.total_files,
            'processed_files': self.processed_files,
            'vectors_added': self.vectors_added,
            'error_count': self.error_count,
            'cancel_requested': self.cancelled,
        }


class JobRegistry:
    """Active indexing contexts of this process, one per project."""

    def __init__(self):
        self._contexts: Dict[str, IndexingContext] = {}
        self._lock = asyncio.Lock()

    async def register(self, context: IndexingContext) -> None:
        async with self._lock:
            if context.project_id in self._contexts:
                raise IndexingInProgressError(context.project_id)
            self._contexts[context.project_id] = context

    async def unregister(self, context: IndexingContext) -> None:
        async with self._lock:
            if self._contexts.get(context.project_id) is context:
                del self._contexts[context.project_id]

    async def evict(self, project_id: str) -> Optional[IndexingContext]:
        """Cancel and forget the project's context so a new run can register."""
        async with self._lock:
            context = self._contexts.pop(project_id, None)
        if context is not None:
            context.token.cancel()
        return context

    def cancel(self, project_id: str) -> bool:
        context = self._contexts.get(project_id)
        if context is None:
            return False
        context.token.cancel()
        return True

    def is_running(self, project_id: str) -> bool:
        return project_id in self._contexts

    def status(self, project_id: str) -> Optional[Dict[str, Any]]:
        context = self._contexts.get(project_id)
        return context.to_dict() if context else None

    def active(self) -> List[IndexingContext]:
        return list(self._contexts.values())


@dataclass
class IndexingOutcome:
    project_id: str
    job_id: str
    status: JobStatus
    files_processed: int = 0
    vectors_added: int = 0
    error_count: int = 0
    commit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'project_id': self.project_id,
            'job_id': self.job_id,
            'status': self.status.value,
            'files_processed': self.files_processed,
            'vectors_added': self.vectors_added,
            'error_count': self.error_count,
            'commit': self.commit,
        }


@dataclass
class ScheduledIndexingResult:
    success: bool
    action: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'action': self.action, 'message': self.message}


class IndexingEngine:
    """Full, incremental and single-file indexing of project repositories."""

    def __init__(self, gateway: MemoryGateway, projects: ProjectStore,
                 registry: Optional[JobRegistry] = None, config: Optional[IndexingConfig] = None):
        self.gateway = gateway
        self.projects = projects
        self.registry = registry or JobRegistry()
        self.config = config or IndexingConfig()

    # Working copies

    def _work_root(self) -> str:
        root = self.config.work_dir or tempfile.gettempdir()
        os.makedirs(root, exist_ok=True)
        return root

    def _scratch_dir(self, prefix: str) -> str:
        return tempfile.mkdtemp(prefix=prefix, dir=self._work_root())

    def _incremental_path(self, project_id: str) -> str:
        return os.path.join(self._work_root(), 'memfoundry-repos', project_id)

    def _working_copy(self, path: str) -> GitWorkingCopy:
        return GitWorkingCopy(path, self.config)

    # Jobs

    async def _ensure_job(self, project_id: str, branch: str, full_reindex: bool,
                          triggered_by: TriggerType, job_id: Optional[str]) -> IndexingJob:
        if job_id:
            job = await self.projects.get_indexing_job(job_id)
            if job is not None and not JobStatus(job.status).is_terminal:
                return job
        return await self.projects.start_indexing_job(
            project_id, branch=branch, full_reindex=full_reindex, triggered_by=triggered_by, job_id=job_id,
        )

    async def _progress(self, context: IndexingContext, status: Optional[JobStatus] = None, **fields) -> None:
        await self.projects.update_indexing_progress(context.job_id, status, **fields)

    async def _execute(self, context: IndexingContext, runner, *args) -> IndexingOutcome:
        """Run ``runner`` under the registry and persist its terminal state."""
        log = logger.bind(project_id=context.project_id, job_id=context.job_id, mode=context.mode)
        await self.registry.register(context)
        try:
            commit = await runner(context, *args)
        except IndexingCancelled:
            log.info("Indexing cancelled", processed_files=context.processed_files)
            await self._progress(context, JobStatus.CANCELLED, processed_files=context.processed_files,
                                 vectors_added=context.vectors_added, error_count=context.error_count)
            record_indexing_job(context.mode, JobStatus.CANCELLED.value, time.time() - context.started_at)
            return self._outcome(context, JobStatus.CANCELLED)
        except Exception as e:
            log.error(f"Indexing failed: {e}")
            await self._progress(context, JobStatus.FAILED, error_message=str(e) or type(e).__name__,
                                 error_count=context.error_count)
            record_indexing_job(context.mode, JobStatus.FAILED.value, time.time() - context.started_at)
            raise
        finally:
            await self.registry.unregister(context)

        record_indexing_job(context.mode, JobStatus.COMPLETED.value, time.time() - context.started_at)
        log.info(
            f"Indexing completed: {context.processed_files} files, {context.vectors_added} vectors",
            commit=commit, error_count=context.error_count,
        )
        return self._outcome(context, JobStatus.COMPLETED, commit)

    @staticmethod
    def _outcome(context: IndexingContext, status: JobStatus, commit: Optional[str] = None) -> IndexingOutcome:
        return IndexingOutcome(
            project_id=context.project_id,
            job_id=context.job_id,
            status=status,
            files_processed=context.processed_files,
            vectors_added=context.vectors_added,
            error_count=context.error_count,
            commit=commit,
        )

    # Files

    async def _read_file(self, full_path: pathlib.Path) -> Optional[str]:
        if full_path.stat().st_size > self.config.max_file_size:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, full_path.read_text, 'utf-8')

    async def _ingest_file(self, project_id: str, full_path: pathlib.Path, relative_path: str,
                           purge_first: bool = False) -> int:
        """Ingest one file into the project scope; raises on read or gateway failure."""
        language = language_for_path(relative_path)
        content_type = content_type_for_language(language)

        # Purged even when the new content is skipped below.
        if purge_first:
            await self.gateway.delete_source(relative_path, project_id=project_id, scope=PROJECT_SCOPE)

        content = await self._read_file(full_path)
        if content is None:
            logger.warning(f"Skipping large file: {relative_path}", project_id=project_id)
            record_indexing_file(content_type, 'skipped')
            return 0
        if not content.strip():
            record_indexing_file(content_type, 'skipped')
            return 0

        result = await self.gateway.ingest(
            content, relative_path, content_type, language, project_id=project_id, scope=PROJECT_SCOPE,
        )
        record_indexing_file(content_type, 'indexed')
        return result.vectors_added

    async def _process_files(self, context: IndexingContext, files: List[pathlib.Path],
                             purge_first: bool) -> None:
        total = len(files)
        for i, full_path in enumerate(files):
            context.check_cancelled()
            relative_path = full_path.relative_to(context.repo_path).as_posix()
            await self._progress(context, current_file=relative_path, processed_files=i,
                                 progress=15 + round(i / total * 80))
            try:
                context.vectors_added += await self._ingest_file(
                    context.project_id, full_path, relative_path, purge_first=purge_first,
                )
            except Exception as e:
                context.error_count += 1
                record_indexing_file(content_type_for_language(language_for_path(relative_path)), 'error')
                logger.warning(f"Failed to process file {relative_path}: {e}",
                               project_id=context.project_id, job_id=context.job_id)
            context.processed_files = i + 1

    async def _scan(self, root: str) -> List[pathlib.Path]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, scan_files, root)

    # Full index

    async def start_full_indexing(self, project_id: str, git_repo: str, branch: str = 'main',
                                  job_id: Optional[str] = None,
                                  triggered_by: TriggerType = TriggerType.MANUAL) -> IndexingOutcome:
        if self.registry.is_running(project_id):
            raise IndexingInProgressError(project_id)
        job = await self._ensure_job(project_id, branch, True, triggered_by, job_id)

        scratch = self._scratch_dir(f"memfoundry_{project_id}_")
        context = IndexingContext(project_id, job.id, os.path.join(scratch, 'repo'), mode='full')
        try:
            return await self._execute(context, self._run_full, git_repo, branch)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    async def _run_full(self, context: IndexingContext, git_repo: str, branch: str) -> str:
        await self._progress(context, JobStatus.RUNNING, progress=5)
        working_copy = self._working_copy(context.repo_path)
        await working_copy.clone(
            git_repo,
            depth=self.config.clone_depth,
            branch=branch if branch not in ('main', 'master') else None,
        )
        context.check_cancelled()

        await self._progress(context, progress=10, current_file='Scanning files...')
        files = await self._scan(context.repo_path)
        context.total_files = len(files)
        await self._progress(context, progress=15, total_files=len(files), processed_files=0)
        context.check_cancelled()

        await self._process_files(context, files, purge_first=False)

        commit = await working_copy.head_commit()
        current_branch = await working_copy.current_branch()
        await self._progress(context, JobStatus.COMPLETED, progress=100, processed_files=len(files),
                             vectors_added=context.vectors_added, error_count=context.error_count)
        await self.projects.record_index_result(
            context.project_id, commit, current_branch, len(files), context.vectors_added,
        )
        return commit

    # Incremental index

    async def start_incremental_indexing(self, project_id: str, git_repo: str, target_commit: str = 'HEAD',
                                         branch: str = 'main', job_id: Optional[str] = None,
                                         triggered_by: TriggerType = TriggerType.WEBHOOK) -> IndexingOutcome:
        if self.registry.is_running(project_id):
            raise IndexingInProgressError(project_id)
        job = await self._ensure_job(project_id, branch, False, triggered_by, job_id)

        repo_path = self._incremental_path(project_id)
        context = IndexingContext(project_id, job.id, repo_path, mode='incremental')
        try:
            return await self._execute(context, self._run_incremental, git_repo, target_commit, branch)
        finally:
            if not self.config.keep_working_copies:
                shutil.rmtree(repo_path, ignore_errors=True)

    async def _run_incremental(self, context: IndexingContext, git_repo: str, target_commit: str,
                               branch: str) -> str:
        await self._progress(context, JobStatus.RUNNING, progress=5, current_file='Setting up repository...')
        working_copy = self._working_copy(context.repo_path)
        await working_copy.prepare_incremental(git_repo, branch)
        context.check_cancelled()

        project = await self.projects.get_project(context.project_id)
        if project is None:
            raise ProjectNotFoundError(context.project_id)
        target = await working_copy.resolve(target_commit)
        previous_commit = project.last_indexed_commit

        if not previous_commit:
            logger.info("First time indexing - processing all files", project_id=context.project_id)
            await self._progress(context, progress=10, current_file='First time indexing - scanning all files...')
            files = await self._scan(context.repo_path)
        else:
            logger.info(f"Incremental indexing from {previous_commit} to {target}", project_id=context.project_id)
            await self._progress(context, progress=10, current_file='Analyzing changes...')
            diff = await working_copy.diff(previous_commit, target)
            await self._purge_paths(context, diff.deleted + [old for old, _ in diff.renamed])

            changed = diff.added + diff.modified + [new for _, new in diff.renamed]
            root = pathlib.Path(context.repo_path)
            files = [root / path for path in changed if is_indexable_path(path)]
            logger.info(f"Found {len(files)} changed files to process", project_id=context.project_id)

        context.total_files = len(files)
        await self._progress(context, progress=15, total_files=len(files), processed_files=0)
        context.check_cancelled()

        await self._process_files(context, files, purge_first=bool(previous_commit))

        await self._progress(context, JobStatus.COMPLETED, progress=100, processed_files=len(files),
                             vectors_added=context.vectors_added, error_count=context.error_count)
        if previous_commit:
            vector_count = (project.vector_count or 0) + context.vectors_added
        else:
            vector_count = context.vectors_added
        all_files = await self._scan(context.repo_path)
        await self.projects.record_index_result(
            context.project_id, target, branch, len(all_files), vector_count,
        )
        return target

    async def _purge_paths(self, context: IndexingContext, paths: List[str]) -> None:
        for path in paths:
            try:
                await self.gateway.delete_source(path, project_id=context.project_id, scope=PROJECT_SCOPE)
                logger.debug(f"Deleted vectors for removed path {path}", project_id=context.project_id)
            except Exception as e:
                context.error_count += 1
                logger.warning(f"Failed to delete vectors for {path}: {e}", project_id=context.project_id)

    # Single files

    async def index_single_file(self, project_id: str, git_repo: str, file_path: str,
                                branch: str = 'main') -> Dict[str, Any]:
        scratch = None
        try:
            if await self.projects.get_project(project_id) is None:
                raise ProjectNotFoundError(project_id)

            scratch = self._scratch_dir(f"memfoundry_single_{project_id}_")
            working_copy = self._working_copy(os.path.join(scratch, 'repo'))
            await working_copy.prepare_incremental(git_repo, branch)

            full_path = pathlib.Path(working_copy.path) / file_path
            if not full_path.is_file():
                raise FileNotFoundError(f"File not found: {file_path}")
            if not is_indexable_path(file_path):
                return {
                    'success': False,
                    'vectors_added': 0,
                    'message': f"File type not supported for indexing: {file_path}",
                }

            vectors = await self._ingest_file(project_id, full_path, file_path)
            logger.info(f"Single file indexing completed: {file_path}, {vectors} vectors added",
                        project_id=project_id)
            return {
                'success': True,
                'vectors_added': vectors,
                'message': f"Successfully indexed {file_path} with {vectors} vectors",
            }
        except Exception as e:
            logger.error(f"Single file indexing failed for {file_path}: {e}", project_id=project_id)
            return {'success': False, 'vectors_added': 0, 'message': f"Failed to index file: {e}"}
        finally:
            if scratch:
                shutil.rmtree(scratch, ignore_errors=True)

    async def reindex_single_file(self, project_id: str, git_repo: str, file_path: str,
                                  branch: str = 'main') -> Dict[str, Any]:
        try:
            await self.gateway.delete_source(file_path, project_id=project_id, scope=PROJECT_SCOPE)
        except Exception as e:
            logger.error(f"Single file reindexing failed for {file_path}: {e}", project_id=project_id)
            return {'success': False, 'vectors_added': 0, 'message': f"Failed to reindex file: {e}"}

        result = await self.index_single_file(project_id, git_repo, file_path, branch)
        if result['success']:
            result['message'] = f"Successfully reindexed {file_path} with {result['vectors_added']} vectors"
        return result

    # Whole-project operations

    async def full_reindex(self, project_id: str, git_repo: str, branch: str = 'main',
                           job_id: Optional[str] = None,
                           triggered_by: TriggerType = TriggerType.MANUAL) -> Dict[str, Any]:
        """Drop every vector of the project and index it again from scratch."""
        try:
            project = await self.projects.get_project(project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)

            if await self.registry.evict(project_id) is not None:
                logger.info("Cancelled running indexing before full reindex", project_id=project_id)

            try:
                await self.gateway.delete_all_project_vectors(project_id)
            except Exception as e:
                logger.warning(f"Failed to clear existing vectors, continuing with reindex: {e}",
                               project_id=project_id)

            outcome = await self.start_full_indexing(project_id, git_repo, branch, job_id, triggered_by)
        except Exception as e:
            logger.error(f"Full reindex failed: {e}", project_id=project_id)
            return {'success': False, 'message': f"Failed to run full reindex: {e}"}

        return {
            'success': outcome.status == JobStatus.COMPLETED,
            'message': f"Full reindex of {project.name} finished with status {outcome.status.value}",
            'outcome': outcome.to_dict(),
        }

    async def scheduled_incremental_indexing(self, project_id: str, git_repo: str,
                                             branch: str = 'main') -> ScheduledIndexingResult:
        """Index new commits of ``branch`` if there are any."""
        try:
            project = await self.projects.get_project(project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            if self.registry.is_running(project_id):
                return ScheduledIndexingResult(True, 'no_changes', "Indexing already in progress")

            current = await remote_head(git_repo, branch, timeout=self.config.fetch_timeout)
            if current is None:
                raise ValueError(f"Branch {branch} not found in {git_repo}")

            if project.last_indexed_commit == current:
                return ScheduledIndexingResult(
                    True, 'no_changes',
                    f"No new commits found. Project is up to date (commit: {current[:7]})",
                )

            if not project.last_indexed_commit:
                await self.start_full_indexing(project_id, git_repo, branch, triggered_by=TriggerType.SCHEDULED)
                return ScheduledIndexingResult(
                    True, 'full_index',
                    f"No previous indexing found. Ran full indexing for commit {current[:7]}",
                )

            await self.start_incremental_indexing(
                project_id, git_repo, current, branch, triggered_by=TriggerType.SCHEDULED,
            )
            return ScheduledIndexingResult(
                True, 'incremental_index',
                f"New commits detected. Indexed changes from {project.last_indexed_commit[:7]} to {current[:7]}",
            )
        except Exception as e:
            logger.error(f"Scheduled incremental indexing failed: {e}", project_id=project_id)
            return ScheduledIndexingResult(False, 'error', f"Failed to check for changes: {e}")

    def cancel_indexing(self, project_id: str) -> bool:
        return self.registry.cancel(project_id)

    def get_indexing_status(self, project_id: str) -> Optional[Dict[str, Any]]:
        return self.registry.status(project_id)
