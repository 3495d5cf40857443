"""Prometheus metrics for memfoundry."""

from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry
from fastapi import FastAPI, Request, Response
import os
import re
import time
import logging
from typing import Optional

logger = logging.getLogger(__name__)

memfoundry_registry = CollectorRegistry()

# HTTP
request_count = Counter(
    'memfoundry_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=memfoundry_registry
)

request_duration = Histogram(
    'memfoundry_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=memfoundry_registry
)

# Search
search_requests = Counter(
    'memfoundry_search_requests_total',
    'Total number of search requests',
    ['search_type', 'status'],
    registry=memfoundry_registry
)

search_duration = Histogram(
    'memfoundry_search_duration_seconds',
    'Search request duration in seconds',
    ['search_type'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=memfoundry_registry
)

search_results_count = Histogram(
    'memfoundry_search_results_count',
    'Number of search results returned',
    ['search_type'],
    buckets=[0, 1, 5, 10, 25, 50],
    registry=memfoundry_registry
)

search_cache_events = Counter(
    'memfoundry_search_cache_events_total',
    'Search cache lookups by outcome',
    ['outcome'],
    registry=memfoundry_registry
)

embedding_duration = Histogram(
    'memfoundry_embedding_duration_seconds',
    'Embedding request duration in seconds',
    ['model'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=memfoundry_registry
)

# Indexing
indexed_files = Counter(
    'memfoundry_indexed_files_total',
    'Files processed by the indexing engine',
    ['content_type', 'outcome'],
    registry=memfoundry_registry
)

vectors_written = Counter(
    'memfoundry_vectors_written_total',
    'Vectors upserted into the vector store',
    registry=memfoundry_registry
)

indexing_jobs = Counter(
    'memfoundry_indexing_jobs_total',
    'Indexing runs by final status',
    ['mode', 'status'],
    registry=memfoundry_registry
)

indexing_job_duration = Histogram(
    'memfoundry_indexing_job_duration_seconds',
    'Indexing run duration in seconds',
    ['mode'],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800],
    registry=memfoundry_registry
)

# Queue
queue_jobs = Counter(
    'memfoundry_queue_jobs_total',
    'Queue job transitions',
    ['queue', 'state'],
    registry=memfoundry_registry
)

app_info = Info(
    'memfoundry_app',
    'memfoundry application information',
    registry=memfoundry_registry
)

error_count = Counter(
    'memfoundry_errors_total',
    'Total number of errors',
    ['error_type', 'component'],
    registry=memfoundry_registry
)

_UUID_RE = re.compile(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}')
_NUMERIC_RE = re.compile(r'/\d+(?=/|$)')
_HASH_RE = re.compile(r'/[a-f0-9]{32,}')
_PROJECT_RE = re.compile(r'/projects/[^/]+')


def normalize_endpoint(path: str) -> str:
    """Collapse identifiers in a path to keep label cardinality bounded."""
    path = _UUID_RE.sub('/{uuid}', path)
    path = _HASH_RE.sub('/{hash}', path)
    path = _NUMERIC_RE.sub('/{id}', path)
    return _PROJECT_RE.sub('/projects/{project_id}', path)


class PrometheusMiddleware:
    """ASGI middleware recording request counts and durations."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        start_time = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            logger.error(f"Request processing error: {e}")
            error_count.labels(error_type=type(e).__name__, component="http").inc()
            raise
        finally:
            request_count.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.perf_counter() - start_time)


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Install the middleware and the ``/metrics`` route."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        return Response(generate_latest(memfoundry_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({
        'version': os.getenv('APP_VERSION', 'unknown'),
        'environment': os.getenv('ENVIRONMENT', 'development'),
    })
    logger.info("Prometheus metrics configured")


def record_search_metrics(search_type: str, duration: float, result_count: int,
                          error: Optional[str] = None) -> None:
    status = "error" if error else "success"
    search_requests.labels(search_type=search_type, status=status).inc()
    search_duration.labels(search_type=search_type).observe(duration)
    if error:
        error_count.labels(error_type="search_error", component="search").inc()
    else:
        search_results_count.labels(search_type=search_type).observe(result_count)


def record_cache_event(outcome: str) -> None:
    """``outcome`` is one of hit, miss, unavailable."""
    search_cache_events.labels(outcome=outcome).inc()


def record_embedding_duration(model: str, duration: float) -> None:
    embedding_duration.labels(model=model).observe(duration)


def record_indexing_file(content_type: str, outcome: str) -> None:
    indexed_files.labels(content_type=content_type, outcome=outcome).inc()
    if outcome == "error":
        error_count.labels(error_type="file_error", component="indexing").inc()


def record_indexing_job(mode: str, status: str, duration: Optional[float] = None) -> None:
    indexing_jobs.labels(mode=mode, status=status).inc()
    if duration is not None:
        indexing_job_duration.labels(mode=mode).observe(duration)


def record_queue_event(queue: str, state: str) -> None:
    queue_jobs.labels(queue=queue, state=state).inc()
