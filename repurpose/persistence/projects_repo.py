"""
SQLite Projects Repository.
"""
import sqlite3
import logging
from typing import Optional, List

from repurpose.orchestration.models import Project, ProjectStatus, TaskStatus

from .database import Database, utc_now, to_db_time, from_db_time

logger = logging.getLogger(__name__)


class ProjectsRepository:
    """SQLite-backed project records and derived project status."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, project_id: str, user_id: str, source_url: str) -> Project:
        """Register a project. Raises sqlite3.IntegrityError if it already exists."""
        now = to_db_time(utc_now())

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO projects (project_id, user_id, source_url, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (project_id, user_id, source_url, ProjectStatus.DRAFT.value, now, now)
            )

        logger.info(f"Project created: project={project_id}, user={user_id}")
        return self.get(project_id)

    def get(self, project_id: str) -> Optional[Project]:
        row = self.db.fetchone(
            "SELECT * FROM projects WHERE project_id = ?",
            (project_id,)
        )
        return self._row_to_project(row) if row else None

    def list_for_user(self, user_id: str, limit: int = 100) -> List[Project]:
        rows = self.db.fetchall(
            """
            SELECT * FROM projects
            WHERE user_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (user_id, limit)
        )
        return [self._row_to_project(row) for row in rows]

    def delete(self, project_id: str) -> bool:
        """
        Delete a project. Tasks, batch items and artifacts cascade, so late
        provider callbacks for them no longer resolve.
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM projects WHERE project_id = ?",
                (project_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Project deleted: project={project_id}")
        return deleted

    def refresh_status(self, conn: sqlite3.Connection, project_id: str) -> ProjectStatus:
        """
        Recompute project status from its tasks.
        Must be called inside the caller's transaction.
        """
        rows = conn.execute(
            "SELECT status FROM tasks WHERE project_id = ?",
            (project_id,)
        ).fetchall()
        statuses = [TaskStatus(row["status"]) for row in rows]

        if not statuses:
            derived = ProjectStatus.DRAFT
        elif any(not s.is_terminal for s in statuses):
            derived = ProjectStatus.PROCESSING
        elif any(s == TaskStatus.COMPLETED for s in statuses):
            derived = ProjectStatus.COMPLETED
        else:
            derived = ProjectStatus.FAILED

        conn.execute(
            "UPDATE projects SET status = ?, updated_at = ? WHERE project_id = ?",
            (derived.value, to_db_time(utc_now()), project_id)
        )
        return derived

    def _row_to_project(self, row) -> Project:
        return Project(
            project_id=row["project_id"],
            user_id=row["user_id"],
            source_url=row["source_url"],
            status=ProjectStatus(row["status"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )
