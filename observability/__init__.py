"""Observability package for memfoundry."""

from .logging import (
    setup_logging,
    get_logger,
    get_structured_logger,
    StructuredLogger,
    JSONFormatter,
    ColoredFormatter,
    log_performance,
)
from .prometheus_metrics import (
    setup_prometheus_metrics,
    record_search_metrics,
    record_cache_event,
    record_embedding_duration,
    record_indexing_file,
    record_indexing_job,
    record_queue_event,
    normalize_endpoint,
    PrometheusMiddleware,
    memfoundry_registry,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'get_structured_logger',
    'StructuredLogger',
    'JSONFormatter',
    'ColoredFormatter',
    'log_performance',
    'setup_prometheus_metrics',
    'record_search_metrics',
    'record_cache_event',
    'record_embedding_duration',
    'record_indexing_file',
    'record_indexing_job',
    'record_queue_event',
    'normalize_endpoint',
    'PrometheusMiddleware',
    'memfoundry_registry',
]
