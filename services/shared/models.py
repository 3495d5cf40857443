"""Relational models: projects, indexing jobs and the keyword search tables."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: datetime) -> Any:
    return value.isoformat() if value else None


class IndexStatus(str, Enum):
    IDLE = "IDLE"
    INDEXING = "INDEXING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class TriggerType(str, Enum):
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"
    SCHEDULED = "SCHEDULED"


class Project(Base):
    """A git repository whose content is indexed into its own scope."""
    __tablename__ = 'projects'

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False, unique=True)
    git_repo = Column(String(2048), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    index_status = Column(String(20), nullable=False, default=IndexStatus.IDLE.value)
    index_progress = Column(Integer, nullable=False, default=0)
    indexed_at = Column(DateTime(timezone=True), nullable=True)
    file_count = Column(Integer, nullable=False, default=0)
    vector_count = Column(Integer, nullable=False, default=0)
    last_indexed_commit = Column(String(64), nullable=True)
    last_indexed_branch = Column(String(255), nullable=True)

    scheduled_indexing_enabled = Column(Boolean, nullable=False, default=False)
    scheduled_indexing_branch = Column(String(255), nullable=False, default='main')
    scheduled_indexing_interval = Column(Integer, nullable=False, default=60)
    scheduled_indexing_last_run = Column(DateTime(timezone=True), nullable=True)

    jobs = relationship("IndexingJob", back_populates="project", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_projects_index_status', 'index_status'),
        Index('idx_projects_scheduled', 'scheduled_indexing_enabled'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'git_repo': self.git_repo,
            'index_status': self.index_status,
            'index_progress': self.index_progress,
            'indexed_at': _iso(self.indexed_at),
            'file_count': self.file_count,
            'vector_count': self.vector_count,
            'last_indexed_commit': self.last_indexed_commit,
            'last_indexed_branch': self.last_indexed_branch,
            'scheduled_indexing_enabled': self.scheduled_indexing_enabled,
            'scheduled_indexing_branch': self.scheduled_indexing_branch,
            'scheduled_indexing_interval': self.scheduled_indexing_interval,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class IndexingJob(Base):
    """Durable record of one indexing run."""
    __tablename__ = 'indexing_jobs'

    id = Column(String(64), primary_key=True, default=new_id)
    project_id = Column(String(64), ForeignKey('projects.id', ondelete='CASCADE'), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)
    current_file = Column(String(2048), nullable=True)
    total_files = Column(Integer, nullable=False, default=0)
    processed_files = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    vectors_added = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    branch = Column(String(255), nullable=False, default='main')
    full_reindex = Column(Boolean, nullable=False, default=False)
    triggered_by = Column(String(20), nullable=False, default=TriggerType.MANUAL.value)

    project = relationship("Project", back_populates="jobs")

    __table_args__ = (
        Index('idx_indexing_jobs_project_id', 'project_id'),
        Index('idx_indexing_jobs_status', 'status'),
        Index('idx_indexing_jobs_created_at', 'created_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'project_id': self.project_id,
            'status': self.status,
            'progress': self.progress,
            'current_file': self.current_file,
            'total_files': self.total_files,
            'processed_files': self.processed_files,
            'error_count': self.error_count,
            'vectors_added': self.vectors_added,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'error_message': self.error_message,
            'branch': self.branch,
            'full_reindex': self.full_reindex,
            'triggered_by': self.triggered_by,
        }


class SearchIndexEntry(Base):
    """Keyword-searchable copy of ingested content."""
    __tablename__ = 'search_index'

    id = Column(String(64), primary_key=True, default=new_id)
    content_hash = Column(String(64), nullable=False, unique=True)
    title = Column(String(500), nullable=True)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    source_url = Column(String(2048), nullable=False)
    source_type = Column(String(50), nullable=False)
    content_type = Column(String(50), nullable=False)
    language = Column(String(50), nullable=True)
    word_count = Column(Integer, nullable=False, default=0)
    complexity = Column(String(20), nullable=False, default='medium')
    freshness = Column(Float, nullable=False, default=1.0)
    popularity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    last_searched = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_search_index_source_url', 'source_url'),
        Index('idx_search_index_content_type', 'content_type'),
        Index('idx_search_index_popularity', 'popularity'),
    )


class SearchQuery(Base):
    """Query history used for analytics."""
    __tablename__ = 'search_queries'

    id = Column(String(64), primary_key=True, default=new_id)
    query = Column(Text, nullable=False)
    query_hash = Column(String(64), nullable=False)
    search_type = Column(String(20), nullable=False)
    filters = Column(Text, nullable=True)
    result_count = Column(Integer, nullable=False, default=0)
    search_time = Column(Integer, nullable=False, default=0)
    session_id = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_search_queries_query_hash', 'query_hash'),
        Index('idx_search_queries_created_at', 'created_at'),
    )


class SearchSuggestion(Base):
    """Frequency counter per normalised query."""
    __tablename__ = 'search_suggestions'

    id = Column(String(64), primary_key=True, default=new_id)
    suggestion = Column(String(500), nullable=False, unique=True)
    category = Column(String(50), nullable=False, default='query')
    search_count = Column(Integer, nullable=False, default=1)
    last_used = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_search_suggestions_category', 'category'),
        Index('idx_search_suggestions_search_count', 'search_count'),
    )
