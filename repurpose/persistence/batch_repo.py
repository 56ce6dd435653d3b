"""
SQLite Batch Items Repository.

Items of a `thumbnail-batch` task are created together with the parent task
(TaskProgressStore.begin). Each item result write re-evaluates the parent
aggregate inside the same transaction.
"""
import json
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from repurpose.orchestration.models import (
    BatchItem,
    BatchJob,
    TaskType,
    TaskStatus,
    ProviderJobRef,
    Artifact,
)

from .database import Database, utc_now, to_db_time
from .tasks_repo import TaskProgressStore, MAX_PROCESSING_PERCENT

logger = logging.getLogger(__name__)


class BatchRepository:
    """Per-item state of batch tasks and the parent aggregate."""

    def __init__(self, db: Database, tasks: TaskProgressStore):
        self.db = db
        self.tasks = tasks

    def get_batch(self, batch_id: str) -> Optional[BatchJob]:
        parent = self.db.fetchone(
            "SELECT project_id, task_type FROM tasks WHERE batch_id = ?",
            (batch_id,)
        )
        if parent is None:
            return None

        rows = self.db.fetchall(
            "SELECT * FROM batch_items WHERE batch_id = ? ORDER BY item_index",
            (batch_id,)
        )
        return self._build_batch(batch_id, parent["project_id"], parent["task_type"], rows)

    def get_item(self, batch_id: str, item_index: int) -> Optional[BatchItem]:
        row = self.db.fetchone(
            "SELECT * FROM batch_items WHERE batch_id = ? AND item_index = ?",
            (batch_id, item_index)
        )
        return self._row_to_item(row) if row else None

    def find_item_by_provider_ref(self, ref: ProviderJobRef) -> Optional[BatchItem]:
        row = self.db.fetchone(
            "SELECT * FROM batch_items WHERE provider_name = ? AND provider_job_id = ?",
            (ref.provider, ref.job_id)
        )
        return self._row_to_item(row) if row else None

    def list_open_items(self, batch_id: str) -> List[BatchItem]:
        """Submitted items still waiting on the provider."""
        rows = self.db.fetchall(
            """
            SELECT * FROM batch_items
            WHERE batch_id = ? AND status = 'processing' AND provider_job_id IS NOT NULL
            ORDER BY item_index
            """,
            (batch_id,)
        )
        return [self._row_to_item(row) for row in rows]

    def list_batches_needing_attention(self, quiet_since: datetime, limit: int = 50) -> List[str]:
        """
        Batch ids with unsubmitted items or submitted items quiet since
        `quiet_since`, whose parent task is still processing.
        """
        rows = self.db.fetchall(
            """
            SELECT DISTINCT b.batch_id FROM batch_items b
            JOIN tasks t ON t.project_id = b.project_id AND t.task_type = b.task_type
            WHERE t.status = 'processing'
              AND b.status IN ('pending', 'processing')
              AND b.updated_at < ?
            LIMIT ?
            """,
            (to_db_time(quiet_since), limit)
        )
        return [row["batch_id"] for row in rows]

    def try_claim_item(self, batch_id: str, item_index: int, token: str, stale_before: datetime) -> bool:
        """Compare-and-set claim on an unsubmitted item."""
        now = to_db_time(utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE batch_items
                SET submission_claim = ?, claimed_at = ?
                WHERE batch_id = ? AND item_index = ?
                  AND status = 'pending'
                  AND provider_job_id IS NULL
                  AND (submission_claim IS NULL OR claimed_at < ?)
                """,
                (token, now, batch_id, item_index, to_db_time(stale_before))
            )
            return cursor.rowcount > 0

    def release_item(self, batch_id: str, item_index: int, token: str) -> bool:
        now = to_db_time(utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE batch_items
                SET submission_claim = NULL, claimed_at = NULL, updated_at = ?
                WHERE batch_id = ? AND item_index = ? AND submission_claim = ?
                """,
                (now, batch_id, item_index, token)
            )
            return cursor.rowcount > 0

    def set_item_provider_ref(self, batch_id: str, item_index: int, ref: ProviderJobRef) -> bool:
        now = to_db_time(utc_now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE batch_items
                SET provider_name = ?, provider_job_id = ?, status = 'processing',
                    submission_claim = NULL, claimed_at = NULL, updated_at = ?
                WHERE batch_id = ? AND item_index = ?
                  AND status = 'pending' AND provider_job_id IS NULL
                """,
                (ref.provider, ref.job_id, now, batch_id, item_index)
            )
            recorded = cursor.rowcount > 0

        if recorded:
            logger.info(f"Batch item submitted: batch={batch_id} item={item_index} provider_job={ref}")
        return recorded

    def touch_item(self, batch_id: str, item_index: int) -> None:
        """Mark an item as just polled so the sweep leaves it alone for a while."""
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE batch_items SET updated_at = ? WHERE batch_id = ? AND item_index = ?",
                (to_db_time(utc_now()), batch_id, item_index)
            )

    def record_item_result(
        self,
        batch_id: str,
        item_index: int,
        output_url: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        artifacts: Optional[List[Artifact]] = None,
        error: Optional[str] = None,
    ) -> Tuple[bool, Optional[BatchJob]]:
        """
        Settle one item (success when `error` is None) and re-aggregate the
        parent in the same transaction.

        Returns (changed, batch). An item that is already terminal is left
        untouched and `changed` is False.
        """
        status = TaskStatus.FAILED if error is not None else TaskStatus.COMPLETED
        now = to_db_time(utc_now())

        with self.db.transaction() as conn:
            item_row = conn.execute(
                "SELECT * FROM batch_items WHERE batch_id = ? AND item_index = ?",
                (batch_id, item_index)
            ).fetchone()
            if item_row is None:
                return False, None

            cursor = conn.execute(
                """
                UPDATE batch_items
                SET status = ?, output_url = ?, result_json = ?, error = ?,
                    submission_claim = NULL, claimed_at = NULL, updated_at = ?
                WHERE batch_id = ? AND item_index = ?
                  AND status NOT IN ('completed', 'failed')
                """,
                (
                    status.value,
                    output_url,
                    json.dumps(result, default=str) if result is not None else None,
                    error,
                    now,
                    batch_id,
                    item_index,
                )
            )
            changed = cursor.rowcount > 0

            project_id = item_row["project_id"]
            task_type = TaskType(item_row["task_type"])

            if changed and status == TaskStatus.COMPLETED and artifacts:
                self.tasks.insert_artifacts(conn, project_id, task_type, artifacts, item_index=item_index)

            rows = conn.execute(
                "SELECT * FROM batch_items WHERE batch_id = ? ORDER BY item_index",
                (batch_id,)
            ).fetchall()
            batch = self._build_batch(batch_id, project_id, task_type.value, rows)

            if changed:
                self._aggregate(conn, batch)

        if changed:
            logger.info(
                f"Batch item {status.value}: batch={batch_id} item={item_index} "
                f"({batch.settled}/{batch.total} settled)"
            )
        return changed, batch

    def _aggregate(self, conn, batch: BatchJob) -> None:
        """Push the aggregate onto the parent task row."""
        aggregate = batch.aggregate_status

        if aggregate == TaskStatus.COMPLETED:
            result = {
                "batch_id": batch.batch_id,
                "total": batch.total,
                "completed": batch.completed,
                "failed": batch.failed,
                "items": [
                    {
                        "index": item.item_index,
                        "status": item.status.value,
                        "output_url": item.output_url,
                        "error": item.error,
                    }
                    for item in batch.items
                ],
            }
            self.tasks.complete_in(conn, batch.project_id, batch.task_type, result, [])
        elif aggregate == TaskStatus.FAILED:
            self.tasks.fail_in(
                conn,
                batch.project_id,
                batch.task_type,
                f"All {batch.total} batch items failed",
            )
        else:
            conn.execute(
                """
                UPDATE tasks SET progress = MAX(progress, ?), updated_at = ?
                WHERE project_id = ? AND task_type = ? AND status = 'processing'
                """,
                (
                    min(batch.percent, MAX_PROCESSING_PERCENT),
                    to_db_time(utc_now()),
                    batch.project_id,
                    batch.task_type.value,
                )
            )

    def _build_batch(self, batch_id: str, project_id: str, task_type: str, rows) -> BatchJob:
        items = [self._row_to_item(row) for row in rows]
        return BatchJob(
            batch_id=batch_id,
            project_id=project_id,
            task_type=TaskType(task_type),
            total=len(items),
            completed=sum(1 for i in items if i.status == TaskStatus.COMPLETED),
            failed=sum(1 for i in items if i.status == TaskStatus.FAILED),
            items=items,
        )

    def _row_to_item(self, row) -> BatchItem:
        ref = None
        if row["provider_job_id"]:
            ref = ProviderJobRef(provider=row["provider_name"], job_id=row["provider_job_id"])

        return BatchItem(
            batch_id=row["batch_id"],
            item_index=row["item_index"],
            status=TaskStatus(row["status"]),
            payload=json.loads(row["payload_json"]) if row["payload_json"] else {},
            provider_ref=ref,
            output_url=row["output_url"],
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            error=row["error"],
        )
