"""Adapters for the task and project collaborators."""

from .projects import ProjectCatalog, ProjectContext, ProjectNotFoundError, ProjectResolver
from .store import TaskNotFoundError, TaskStore, TaskStoreError, YamlTaskStore

__all__ = [
    "ProjectCatalog",
    "ProjectContext",
    "ProjectNotFoundError",
    "ProjectResolver",
    "TaskNotFoundError",
    "TaskStore",
    "TaskStoreError",
    "YamlTaskStore",
]
