"""
Task Progress Store.

Durable record of one row per (project, task type). Every other component
reads and writes task state exclusively through this store.

Guarantees:
- percent is monotonically non-decreasing while a task is processing
  (lower writes are no-ops, so out-of-order deliveries are harmless);
- set_result() is the only path to `completed`, and both set_result() and
  set_failed() are compare-and-set on "not already terminal", so each takes
  effect at most once per task regardless of how webhooks and polls race.
"""
import json
import sqlite3
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from repurpose.orchestration.models import (
    Task,
    TaskType,
    TaskStatus,
    ProviderJobRef,
    Artifact,
)

from .database import Database, utc_now, to_db_time, from_db_time
from .projects_repo import ProjectsRepository

logger = logging.getLogger(__name__)

MAX_PROCESSING_PERCENT = 99

_NOT_TERMINAL = "status NOT IN ('completed', 'failed')"


def _clamp(percent: int) -> int:
    return max(0, min(MAX_PROCESSING_PERCENT, int(percent)))


def _dump(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _load(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning(f"Discarding undecodable JSON column: {value[:80]}")
        return None


class TaskProgressStore:
    """SQLite-backed task progress store."""

    def __init__(self, db: Database, projects: Optional[ProjectsRepository] = None):
        self.db = db
        self.projects = projects or ProjectsRepository(db)

    # ------------------------------------------------------------------ reads

    def get(self, project_id: str, task_type: TaskType) -> Optional[Task]:
        row = self.db.fetchone(
            "SELECT * FROM tasks WHERE project_id = ? AND task_type = ?",
            (project_id, TaskType(task_type).value)
        )
        return self._row_to_task(row) if row else None

    def list_for_project(self, project_id: str) -> List[Task]:
        rows = self.db.fetchall(
            "SELECT * FROM tasks WHERE project_id = ? ORDER BY started_at",
            (project_id,)
        )
        return [self._row_to_task(row) for row in rows]

    def find_by_provider_ref(self, ref: ProviderJobRef) -> Optional[Task]:
        """Reverse look-up of the owning task by opaque provider job reference."""
        row = self.db.fetchone(
            "SELECT * FROM tasks WHERE provider_name = ? AND provider_job_id = ?",
            (ref.provider, ref.job_id)
        )
        return self._row_to_task(row) if row else None

    def list_stale(self, quiet_since: datetime, limit: int = 100) -> List[Task]:
        """Submitted, non-terminal tasks with no update or poll since `quiet_since`."""
        rows = self.db.fetchall(
            f"""
            SELECT * FROM tasks
            WHERE status = 'processing'
              AND provider_job_id IS NOT NULL
              AND batch_id IS NULL
              AND COALESCE(last_polled_at, updated_at) < ?
            ORDER BY updated_at
            LIMIT ?
            """,
            (to_db_time(quiet_since), limit)
        )
        return [self._row_to_task(row) for row in rows]

    def list_unsubmitted(self, quiet_since: datetime, limit: int = 100) -> List[Task]:
        """Accepted tasks whose submission never happened (lost message or crashed worker)."""
        rows = self.db.fetchall(
            """
            SELECT * FROM tasks
            WHERE status = 'processing'
              AND provider_job_id IS NULL
              AND batch_id IS NULL
              AND updated_at < ?
            ORDER BY updated_at
            LIMIT ?
            """,
            (to_db_time(quiet_since), limit)
        )
        return [self._row_to_task(row) for row in rows]

    def artifacts_for(self, project_id: str, task_type: TaskType) -> List[Artifact]:
        rows = self.db.fetchall(
            """
            SELECT * FROM artifacts
            WHERE project_id = ? AND task_type = ?
            ORDER BY id
            """,
            (project_id, TaskType(task_type).value)
        )
        return [
            Artifact(kind=row["kind"], url=row["url"], metadata=_load(row["metadata_json"]) or {})
            for row in rows
        ]

    # ----------------------------------------------------------------- writes

    def begin(
        self,
        project_id: str,
        task_type: TaskType,
        payload: Dict[str, Any],
        initial_percent: int,
        batch_id: Optional[str] = None,
        batch_items: Optional[List[Dict[str, Any]]] = None,
    ) -> Tuple[bool, Task, str]:
        """
        Create or reset the task to `processing` at `initial_percent`.

        Returns (accepted, task, reason). A task that is already processing or
        completed is left untouched and reported as not accepted; the check and
        the write share one IMMEDIATE transaction, so concurrent starts from
        independent workers cannot both be accepted.
        """
        task_type = TaskType(task_type)
        now = to_db_time(utc_now())

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE project_id = ? AND task_type = ?",
                (project_id, task_type.value)
            ).fetchone()

            if row is not None:
                current = TaskStatus(row["status"])
                if current == TaskStatus.PROCESSING:
                    return False, self._row_to_task(row), "already in progress"
                if current == TaskStatus.COMPLETED:
                    return False, self._row_to_task(row), "already completed"

                conn.execute(
                    "DELETE FROM batch_items WHERE project_id = ? AND task_type = ?",
                    (project_id, task_type.value)
                )
                conn.execute(
                    "DELETE FROM artifacts WHERE project_id = ? AND task_type = ?",
                    (project_id, task_type.value)
                )
                conn.execute(
                    """
                    UPDATE tasks
                    SET status = ?, progress = ?, payload_json = ?,
                        provider_name = NULL, provider_job_id = NULL,
                        result_json = NULL, error = NULL, batch_id = ?,
                        poll_attempts = 0, stalled = 0,
                        submission_claim = NULL, claimed_at = NULL,
                        started_at = ?, completed_at = NULL, last_polled_at = NULL,
                        updated_at = ?
                    WHERE project_id = ? AND task_type = ?
                    """,
                    (
                        TaskStatus.PROCESSING.value,
                        _clamp(initial_percent),
                        _dump(payload),
                        batch_id,
                        now,
                        now,
                        project_id,
                        task_type.value,
                    )
                )
            else:
                conn.execute(
                    """
                    INSERT INTO tasks
                    (project_id, task_type, status, progress, payload_json, batch_id,
                     started_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        project_id,
                        task_type.value,
                        TaskStatus.PROCESSING.value,
                        _clamp(initial_percent),
                        _dump(payload),
                        batch_id,
                        now,
                        now,
                    )
                )

            for index, item_payload in enumerate(batch_items or []):
                conn.execute(
                    """
                    INSERT INTO batch_items
                    (batch_id, item_index, project_id, task_type, status, payload_json, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        batch_id,
                        index,
                        project_id,
                        task_type.value,
                        TaskStatus.PENDING.value,
                        _dump(item_payload),
                        now,
                    )
                )

            self.projects.refresh_status(conn, project_id)
            row = conn.execute(
                "SELECT * FROM tasks WHERE project_id = ? AND task_type = ?",
                (project_id, task_type.value)
            ).fetchone()

        logger.info(
            f"Task accepted: project={project_id} task={task_type.value} "
            f"progress={_clamp(initial_percent)}"
        )
        return True, self._row_to_task(row), "accepted"

    def set_progress(
        self,
        project_id: str,
        task_type: TaskType,
        percent: int,
        status: TaskStatus = TaskStatus.PROCESSING,
    ) -> bool:
        """
        Advance progress. Never lowers the stored percent and never touches a
        terminal task. Terminal statuses must go through set_result/set_failed.
        """
        status = TaskStatus(status)
        if status.is_terminal:
            raise ValueError(f"set_progress cannot set terminal status {status.value}")

        now = to_db_time(utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE tasks
                SET progress = MAX(progress, ?), status = ?, updated_at = ?
                WHERE project_id = ? AND task_type = ?
                  AND {_NOT_TERMINAL}
                  AND (status = ? OR status = 'pending')
                """,
                (_clamp(percent), status.value, now, project_id, TaskType(task_type).value, status.value)
            )
            changed = cursor.rowcount > 0
            if changed:
                self.projects.refresh_status(conn, project_id)

        return changed

    def try_claim_submission(
        self,
        project_id: str,
        task_type: TaskType,
        token: str,
        stale_before: datetime,
    ) -> bool:
        """
        Compare-and-set the submission claim. Succeeds only while no provider
        job is recorded and no live claim is held by another worker.
        """
        now = to_db_time(utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE tasks
                SET submission_claim = ?, claimed_at = ?
                WHERE project_id = ? AND task_type = ?
                  AND status = 'processing'
                  AND provider_job_id IS NULL
                  AND (submission_claim IS NULL OR claimed_at < ?)
                """,
                (token, now, project_id, TaskType(task_type).value, to_db_time(stale_before))
            )
            return cursor.rowcount > 0

    def release_submission(self, project_id: str, task_type: TaskType, token: str) -> bool:
        """
        Drop a claim after a transient provider failure. The task goes back to
        `pending` so the caller may start it again; nothing is recorded as failed.
        """
        now = to_db_time(utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE tasks
                SET status = 'pending', progress = 0,
                    submission_claim = NULL, claimed_at = NULL, updated_at = ?
                WHERE project_id = ? AND task_type = ?
                  AND status = 'processing'
                  AND provider_job_id IS NULL
                  AND submission_claim = ?
                """,
                (now, project_id, TaskType(task_type).value, token)
            )
            changed = cursor.rowcount > 0
            if changed:
                self.projects.refresh_status(conn, project_id)

        return changed

    def set_provider_ref(
        self,
        project_id: str,
        task_type: TaskType,
        ref: ProviderJobRef,
        percent: int,
    ) -> bool:
        """Record the provider job id once. A second, different ref is refused."""
        now = to_db_time(utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE tasks
                SET provider_name = ?, provider_job_id = ?,
                    submission_claim = NULL, claimed_at = NULL,
                    progress = MAX(progress, ?), updated_at = ?
                WHERE project_id = ? AND task_type = ?
                  AND status = 'processing'
                  AND provider_job_id IS NULL
                """,
                (ref.provider, ref.job_id, _clamp(percent), now, project_id, TaskType(task_type).value)
            )
            recorded = cursor.rowcount > 0

        if recorded:
            logger.info(f"Provider ref recorded: project={project_id} task={TaskType(task_type).value} provider_job={ref}")
        else:
            logger.warning(
                f"Provider ref not recorded (already set or task not processing): "
                f"project={project_id} task={TaskType(task_type).value} provider_job={ref}"
            )
        return recorded

    def set_result(
        self,
        project_id: str,
        task_type: TaskType,
        result: Dict[str, Any],
        artifacts: Optional[List[Artifact]] = None,
    ) -> bool:
        """
        Transition to `completed` with the result and its artifacts.
        Effective at most once; a call after a terminal state is a no-op.
        """
        with self.db.transaction() as conn:
            completed = self.complete_in(conn, project_id, task_type, result, artifacts or [])

        if completed:
            logger.info(f"Task completed: project={project_id} task={TaskType(task_type).value}")
        else:
            logger.info(f"Duplicate completion ignored: project={project_id} task={TaskType(task_type).value}")
        return completed

    def set_failed(self, project_id: str, task_type: TaskType, error: str) -> bool:
        """Transition to `failed`. Effective at most once."""
        with self.db.transaction() as conn:
            failed = self.fail_in(conn, project_id, task_type, error)

        if failed:
            logger.warning(f"Task failed: project={project_id} task={TaskType(task_type).value}: {error}")
        return failed

    def record_poll_attempt(self, project_id: str, task_type: TaskType) -> int:
        """Increment the durable poll counter. Returns the new count (0 if terminal)."""
        now = to_db_time(utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE tasks
                SET poll_attempts = poll_attempts + 1, last_polled_at = ?
                WHERE project_id = ? AND task_type = ? AND {_NOT_TERMINAL}
                """,
                (now, project_id, TaskType(task_type).value)
            )
            if cursor.rowcount == 0:
                return 0
            row = conn.execute(
                "SELECT poll_attempts FROM tasks WHERE project_id = ? AND task_type = ?",
                (project_id, TaskType(task_type).value)
            ).fetchone()

        return row["poll_attempts"]

    def mark_stalled(self, project_id: str, task_type: TaskType) -> bool:
        """Flag a task as taking longer than expected. Status stays `processing`."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE tasks SET stalled = 1
                WHERE project_id = ? AND task_type = ? AND stalled = 0 AND {_NOT_TERMINAL}
                """,
                (project_id, TaskType(task_type).value)
            )
            return cursor.rowcount > 0

    # ------------------------------------------------- in-transaction helpers

    def complete_in(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        task_type: TaskType,
        result: Dict[str, Any],
        artifacts: List[Artifact],
    ) -> bool:
        """Conditional completion inside an open transaction."""
        task_type = TaskType(task_type)
        now = to_db_time(utc_now())
        cursor = conn.execute(
            f"""
            UPDATE tasks
            SET status = 'completed', progress = 100, result_json = ?, error = NULL,
                stalled = 0, submission_claim = NULL, claimed_at = NULL,
                completed_at = ?, updated_at = ?
            WHERE project_id = ? AND task_type = ? AND {_NOT_TERMINAL}
            """,
            (_dump(result), now, now, project_id, task_type.value)
        )
        if cursor.rowcount == 0:
            return False

        self.insert_artifacts(conn, project_id, task_type, artifacts)
        self.projects.refresh_status(conn, project_id)
        return True

    def fail_in(self, conn: sqlite3.Connection, project_id: str, task_type: TaskType, error: str) -> bool:
        """Conditional failure inside an open transaction."""
        now = to_db_time(utc_now())
        cursor = conn.execute(
            f"""
            UPDATE tasks
            SET status = 'failed', error = ?, stalled = 0,
                submission_claim = NULL, claimed_at = NULL,
                completed_at = ?, updated_at = ?
            WHERE project_id = ? AND task_type = ? AND {_NOT_TERMINAL}
            """,
            (error, now, now, project_id, TaskType(task_type).value)
        )
        if cursor.rowcount == 0:
            return False

        self.projects.refresh_status(conn, project_id)
        return True

    def insert_artifacts(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        task_type: TaskType,
        artifacts: List[Artifact],
        item_index: Optional[int] = None,
    ) -> None:
        now = to_db_time(utc_now())
        for artifact in artifacts:
            conn.execute(
                """
                INSERT INTO artifacts
                (project_id, task_type, item_index, kind, url, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    TaskType(task_type).value,
                    item_index,
                    artifact.kind,
                    artifact.url,
                    _dump(artifact.metadata),
                    now,
                )
            )

    def _row_to_task(self, row) -> Task:
        ref = None
        if row["provider_job_id"]:
            ref = ProviderJobRef(provider=row["provider_name"], job_id=row["provider_job_id"])

        return Task(
            project_id=row["project_id"],
            task_type=TaskType(row["task_type"]),
            status=TaskStatus(row["status"]),
            progress=row["progress"],
            payload=_load(row["payload_json"]) or {},
            provider_ref=ref,
            result=_load(row["result_json"]),
            error=row["error"],
            batch_id=row["batch_id"],
            poll_attempts=row["poll_attempts"],
            stalled=bool(row["stalled"]),
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
            last_polled_at=from_db_time(row["last_polled_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )
