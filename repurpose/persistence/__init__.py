"""
Persistence Module.
Provides SQLite-backed storage for projects, tasks, batch items and artifacts.
"""
from .database import Database, init_schema, utc_now
from .projects_repo import ProjectsRepository
from .tasks_repo import TaskProgressStore
from .batch_repo import BatchRepository

__all__ = [
    "Database",
    "init_schema",
    "utc_now",
    "ProjectsRepository",
    "TaskProgressStore",
    "BatchRepository",
]
