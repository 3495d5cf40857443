"""Exception hierarchy shared by the memfoundry services."""
from typing import List, Optional, Sequence


class MemFoundryError(Exception):
    """Base class for memfoundry errors."""


class DependencyError(MemFoundryError):
    """An external service (embeddings, vector store, broker) failed."""

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(f"{operation}: {message}" if operation else message)


class EmbeddingError(DependencyError):
    pass


class VectorStoreError(DependencyError):
    pass


class QueueError(DependencyError):
    pass


class GitCommandError(MemFoundryError):
    """A git subprocess exited non-zero or timed out."""

    def __init__(self, command: Sequence[str], returncode: Optional[int] = None,
                 stderr: str = '', timed_out: bool = False):
        self.command: List[str] = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        self.timed_out = timed_out
        rendered = ' '.join(self.command)
        if timed_out:
            message = f"Command timed out: {rendered}"
        else:
            message = f"Command failed with exit code {returncode}: {rendered}"
        if self.stderr:
            message = f"{message}\n{self.stderr}"
        super().__init__(message)


class ProjectNotFoundError(MemFoundryError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project {project_id} not found")


class IndexingCancelled(MemFoundryError):
    """Raised inside an indexing run once its cancellation token is set."""


class InvalidSearchRequest(MemFoundryError, ValueError):
    """Malformed search filters or options."""


class IndexingInProgressError(MemFoundryError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Indexing already in progress for project {project_id}")
