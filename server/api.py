"""memfoundry HTTP API.

Run with ``uvicorn server.api:create_app --factory`` or ``python -m server.api``.
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config.database import close_database, initialize_database
from config.settings import Settings, get_settings
from indexer.embeddings import OllamaEmbeddingProvider
from indexer.memory import GLOBAL_SCOPE, MemoryGateway, resolve_scope
from indexer.vector_store import QdrantVectorStore
from observability.logging import setup_logging
from observability.prometheus_metrics import setup_prometheus_metrics
from pipelines.indexing import IndexingEngine, JobRegistry
from server.hybrid_search import HybridSearchEngine, SearchFilters, SearchOptions, SearchResponse
from server.job_handlers import JobHandlers
from server.jobs import QueueJobState, QueueManager
from server.search_cache import SearchResultsCache
from server.webhooks import parse_push_payload
from server.workers import WorkerPool
from services.shared.errors import (
    DependencyError,
    EmbeddingError,
    IndexingInProgressError,
    InvalidSearchRequest,
    ProjectNotFoundError,
    VectorStoreError,
)
from services.shared.models import IndexStatus, JobStatus, TriggerType
from services.shared.projects import ProjectStore
from services.shared.search_store import SearchStore

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"


@dataclass
class ServiceContainer:
    """Everything the routes need, wired once per process."""
    settings: Settings
    projects: ProjectStore
    gateway: MemoryGateway
    engine: IndexingEngine
    search: HybridSearchEngine
    queue: QueueManager
    workers: Optional[WorkerPool] = None

    @classmethod
    async def bootstrap(cls, settings: Optional[Settings] = None, start_workers: bool = True) -> 'ServiceContainer':
        settings = settings or get_settings()
        session_factory = await initialize_database(settings.database)
        projects = ProjectStore(session_factory)

        gateway = MemoryGateway(OllamaEmbeddingProvider(settings.embedding), QdrantVectorStore(settings.qdrant))
        engine = IndexingEngine(gateway, projects, JobRegistry(), settings.indexing)

        cache = SearchResultsCache(settings.search, settings.redis)
        await cache.connect()
        search = HybridSearchEngine(gateway, SearchStore(session_factory), cache, settings.search)

        queue = QueueManager(settings.queue, settings.redis)
        await queue.initialize()

        container = cls(settings, projects, gateway, engine, search, queue)
        if start_workers:
            handlers = JobHandlers(engine, projects, gateway, queue)
            container.workers = WorkerPool(queue, handlers.processors(), settings.queue)
            container.workers.start()
        await container.restore_schedules()
        return container

    async def restore_schedules(self) -> int:
        restored = 0
        for project in await self.projects.list_scheduled_projects():
            try:
                await self.queue.add_scheduled_indexing_job(
                    project.id, project.scheduled_indexing_branch, project.scheduled_indexing_interval,
                )
                restored += 1
            except Exception as e:
                logger.error(f"Failed to restore schedule for project {project.id}: {e}")
        if restored:
            logger.info(f"Restored {restored} indexing schedules")
        return restored

    async def close(self):
        if self.workers is not None:
            await self.workers.stop()
        await self.queue.shutdown()
        await self.search.cache.close()
        await self.gateway.close()
        await close_database()


# Request models

class IndexRequest(BaseModel):
    branch: str = 'main'
    full_reindex: bool = False
    trigger: TriggerType = TriggerType.MANUAL


class ScheduleRequest(BaseModel):
    branch: str = 'main'
    interval_minutes: int = Field(default=60, ge=1)


class IngestRequest(BaseModel):
    content: str
    source: str
    content_type: str = 'code'
    language: Optional[str] = None
    project_id: Optional[str] = None
    scope: Optional[Literal['global', 'project']] = None


class RetrieveRequest(BaseModel):
    query: str
    filters: Optional[Dict[str, Any]] = None
    project_id: Optional[str] = None
    scope: Optional[Literal['global', 'project', 'all']] = None
    limit: int = Field(default=5, ge=1, le=50)


class DeleteSourceRequest(BaseModel):
    source: str
    project_id: Optional[str] = None
    scope: Optional[Literal['global', 'project']] = None


class SearchRequest(BaseModel):
    query: str
    filters: Optional[SearchFilters] = None
    options: Optional[SearchOptions] = None


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, 'container', None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return container


async def _require_project(container: ServiceContainer, project_id: str):
    project = await container.projects.get_project(project_id)
    if project is None:
        raise ProjectNotFoundError(project_id)
    return project


def _install_error_handlers(app: FastAPI):
    @app.exception_handler(InvalidSearchRequest)
    async def invalid_search(request: Request, exc: InvalidSearchRequest):
        return JSONResponse(status_code=400, content={'detail': str(exc)})

    @app.exception_handler(ProjectNotFoundError)
    async def project_not_found(request: Request, exc: ProjectNotFoundError):
        return JSONResponse(status_code=404, content={'detail': str(exc)})

    @app.exception_handler(IndexingInProgressError)
    async def indexing_in_progress(request: Request, exc: IndexingInProgressError):
        return JSONResponse(status_code=409, content={'detail': str(exc)})

    @app.exception_handler(DependencyError)
    async def dependency_failed(request: Request, exc: DependencyError):
        logger.error(f"Dependency failure on {request.url.path}: {exc}")
        status_code = 502 if isinstance(exc, (EmbeddingError, VectorStoreError)) else 503
        return JSONResponse(status_code=status_code, content={'detail': str(exc)})


def create_app(container: Optional[ServiceContainer] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the application; without ``container`` services are wired at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is not None:
            app.state.container = container
            yield
            return

        resolved = settings or get_settings()
        setup_logging(level=resolved.log_level, service_name=resolved.service_name, use_json=resolved.log_json)
        app.state.container = await ServiceContainer.bootstrap(resolved)
        logger.info("memfoundry API started")
        try:
            yield
        finally:
            await app.state.container.close()
            logger.info("memfoundry API stopped")

    app = FastAPI(title="memfoundry API", version=APP_VERSION, lifespan=lifespan)
    if container is not None:
        app.state.container = container
    setup_prometheus_metrics(app)
    _install_error_handlers(app)

    # Projects

    @app.post("/projects/{project_id}/index", status_code=202)
    async def index_project(project_id: str, body: Optional[IndexRequest] = None,
                            c: ServiceContainer = Depends(get_container)):
        await _require_project(c, project_id)
        body = body or IndexRequest()

        active = await c.queue.get_active_project_job(project_id)
        if active['exists'] and active['state'] in (QueueJobState.WAITING.value, QueueJobState.DELAYED.value,
                                                    QueueJobState.ACTIVE.value):
            return {
                'job_id': active['data'].get('job_id'),
                'state': active['state'],
                'deduplicated': True,
                'message': 'Indexing already queued for this project',
            }

        job = await c.projects.start_indexing_job(
            project_id, branch=body.branch, full_reindex=body.full_reindex,
            triggered_by=body.trigger,
        )
        queued = await c.queue.enqueue_indexing_job(
            project_id, job.id, body.branch, body.full_reindex, body.trigger.value,
        )
        return {
            'job_id': job.id,
            'queue_job_id': queued.id,
            'state': queued.state.value,
            'deduplicated': False,
            'message': 'Indexing job enqueued',
        }

    @app.post("/projects/{project_id}/cancel")
    async def cancel_indexing(project_id: str, c: ServiceContainer = Depends(get_container)):
        await _require_project(c, project_id)
        running = c.engine.cancel_indexing(project_id)
        dequeued = await c.queue.cancel_existing_project_job(project_id)

        latest = await c.projects.get_latest_job(project_id)
        if not running and latest is not None and not JobStatus(latest.status).is_terminal:
            await c.projects.update_indexing_progress(latest.id, JobStatus.CANCELLED)
        return {'cancelled': running or dequeued, 'running_cancelled': running, 'dequeued': dequeued}

    @app.get("/projects/{project_id}/status")
    async def project_status(project_id: str, c: ServiceContainer = Depends(get_container)):
        project = await _require_project(c, project_id)
        latest = await c.projects.get_latest_job(project_id)
        return {
            'project': project.to_dict(),
            'latest_job': latest.to_dict() if latest else None,
            'queue': await c.queue.get_active_project_job(project_id),
            'live': c.engine.get_indexing_status(project_id),
            'schedule': c.queue.get_schedule(project_id),
        }

    @app.post("/projects/{project_id}/schedule")
    async def schedule_indexing(project_id: str, body: Optional[ScheduleRequest] = None,
                                c: ServiceContainer = Depends(get_container)):
        await _require_project(c, project_id)
        body = body or ScheduleRequest()
        await c.projects.update_project(
            project_id,
            scheduled_indexing_enabled=True,
            scheduled_indexing_branch=body.branch,
            scheduled_indexing_interval=body.interval_minutes,
        )
        schedule_id = await c.queue.add_scheduled_indexing_job(project_id, body.branch, body.interval_minutes)
        return {'schedule_id': schedule_id, 'branch': body.branch, 'interval_minutes': body.interval_minutes}

    @app.delete("/projects/{project_id}/schedule")
    async def unschedule_indexing(project_id: str, c: ServiceContainer = Depends(get_container)):
        await _require_project(c, project_id)
        await c.projects.update_project(project_id, scheduled_indexing_enabled=False)
        removed = await c.queue.remove_scheduled_indexing_job(project_id)
        return {'removed': removed}

    # Webhooks

    @app.post("/webhooks/{project_id}")
    async def push_webhook(project_id: str, request: Request, c: ServiceContainer = Depends(get_container)):
        project = await _require_project(c, project_id)
        try:
            payload = await request.json()
        except ValueError:
            payload = {}

        info = parse_push_payload(request.headers, payload)
        if not info.should_index:
            return {'message': 'Webhook received but no indexing needed', 'reason': info.reason}
        if project.index_status == IndexStatus.INDEXING.value:
            return {'message': 'Indexing already in progress', 'project_id': project_id}

        branch = info.branch or 'main'
        logger.info(f"Webhook triggered incremental indexing for project {project_id} "
                    f"({info.platform}, {branch}@{(info.commit or '')[:7]} by {info.author})")
        job = await c.projects.start_indexing_job(project_id, branch=branch, triggered_by=TriggerType.WEBHOOK)
        queued = await c.queue.enqueue_indexing_job(project_id, job.id, branch, False, TriggerType.WEBHOOK.value)
        return {
            'message': 'Webhook processed, indexing enqueued',
            'project_id': project_id,
            'job_id': job.id,
            'queue_job_id': queued.id,
            **info.to_dict(),
        }

    # Memory

    @app.post("/memory/ingest")
    async def ingest(body: IngestRequest, c: ServiceContainer = Depends(get_container)):
        result = await c.gateway.ingest(
            body.content, body.source, body.content_type, body.language,
            project_id=body.project_id, scope=body.scope,
        )
        # The keyword index has no project partition; only global content goes there.
        if result.project_id == GLOBAL_SCOPE:
            await c.search.index_content(body.content, body.source, 'memory', body.content_type, body.language)
        await c.search.invalidate_cache()
        return result.to_dict()

    @app.post("/memory/retrieve")
    async def retrieve(body: RetrieveRequest, c: ServiceContainer = Depends(get_container)):
        memories = await c.gateway.retrieve(
            body.query, body.filters, project_id=body.project_id, scope=body.scope, limit=body.limit,
        )
        return {'results': [memory.to_dict() for memory in memories]}

    @app.post("/memory/delete-source")
    async def delete_source(body: DeleteSourceRequest, c: ServiceContainer = Depends(get_container)):
        result = await c.gateway.delete_source(body.source, project_id=body.project_id, scope=body.scope)
        if resolve_scope(body.project_id, body.scope) == GLOBAL_SCOPE:
            await c.search.remove_source(body.source)
        await c.search.invalidate_cache()
        return result.to_dict()

    @app.delete("/memory/projects/{project_id}")
    async def delete_project_vectors(project_id: str, c: ServiceContainer = Depends(get_container)):
        result = await c.gateway.delete_all_project_vectors(project_id)
        await c.search.invalidate_cache()
        return result

    @app.get("/memory/projects")
    async def list_memory_projects(c: ServiceContainer = Depends(get_container)) -> Dict[str, List[str]]:
        return {'projects': await c.gateway.list_projects()}

    # Search

    @app.post("/search", response_model=SearchResponse)
    async def search(body: SearchRequest, c: ServiceContainer = Depends(get_container)):
        return await c.search.search(body.query, body.filters, body.options)

    # Operations

    @app.get("/queues/stats")
    async def queue_stats(c: ServiceContainer = Depends(get_container)):
        return await c.queue.get_queue_stats()

    @app.get("/health")
    async def health(request: Request):
        c = getattr(request.app.state, 'container', None)
        if c is None:
            return {'status': 'starting', 'version': APP_VERSION}
        return {
            'status': 'healthy' if c.queue.is_running else 'degraded',
            'version': APP_VERSION,
            'queue_backend': type(c.queue.backend).__name__ if c.queue.backend else None,
            'workers': c.workers.status() if c.workers else {},
            'active_indexing': [context.to_dict() for context in c.engine.registry.active()],
        }

    return app


def main():
    uvicorn.run(
        "server.api:create_app",
        factory=True,
        host=os.getenv('MEMFOUNDRY_HOST', '0.0.0.0'),
        port=int(os.getenv('MEMFOUNDRY_PORT', '8080')),
    )


if __name__ == "__main__":
    main()
