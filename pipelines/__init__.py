"""Pipelines package for memfoundry.

Provides file selection, git working-copy handling and the indexing engine.
"""

from .file_filter import (
    INDEXABLE_EXTENSIONS,
    SKIP_PATTERNS,
    EXTENSION_LANGUAGES,
    should_skip,
    should_index,
    is_indexable_path,
    scan_files,
    language_for_path,
    content_type_for_language
)
from .git_ops import GitDiffResult, GitWorkingCopy, parse_name_status, remote_head, run_git
from .indexing import (
    CancellationToken,
    IndexingContext,
    IndexingEngine,
    IndexingOutcome,
    JobRegistry,
    ScheduledIndexingResult
)

__all__ = [
    # File selection
    'INDEXABLE_EXTENSIONS',
    'SKIP_PATTERNS',
    'EXTENSION_LANGUAGES',
    'should_skip',
    'should_index',
    'is_indexable_path',
    'scan_files',
    'language_for_path',
    'content_type_for_language',

    # Git
    'GitDiffResult',
    'GitWorkingCopy',
    'parse_name_status',
    'remote_head',
    'run_git',

    # Indexing
    'CancellationToken',
    'IndexingContext',
    'IndexingEngine',
    'IndexingOutcome',
    'JobRegistry',
    'ScheduledIndexingResult',
]
