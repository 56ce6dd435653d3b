"""
Tests for the polling reconciler.
"""
from datetime import timedelta

import pytest

from repurpose.orchestration.exceptions import TaskNotFoundError
from repurpose.orchestration.models import ProviderState, StatusResult, TaskStatus, TaskType
from repurpose.persistence.database import to_db_time, utc_now
from repurpose.providers.exceptions import ProviderRejected, ProviderTransientFailure

from conftest import PROJECT_ID, USER_ID, clips_result, scripted_status


async def start_and_submit(orchestrator, task_type="clips"):
    orchestrator.dispatcher.start_task(USER_ID, PROJECT_ID, task_type)
    return await orchestrator.submit(PROJECT_ID, TaskType(task_type))


def rename_provider(orchestrator, table: str, provider: str) -> None:
    """Point every recorded provider ref in `table` at another provider name."""
    with orchestrator.db.transaction() as conn:
        conn.execute(f"UPDATE {table} SET provider_name = ? WHERE project_id = ?", (provider, PROJECT_ID))


def age_task(orchestrator, task_type: TaskType, seconds: float) -> None:
    """Push a task's timestamps into the past."""
    past = to_db_time(utc_now() - timedelta(seconds=seconds))
    with orchestrator.db.transaction() as conn:
        conn.execute(
            "UPDATE tasks SET updated_at = ?, last_polled_at = NULL WHERE project_id = ? AND task_type = ?",
            (past, PROJECT_ID, task_type.value)
        )
        conn.execute(
            "UPDATE batch_items SET updated_at = ? WHERE project_id = ? AND task_type = ?",
            (past, PROJECT_ID, task_type.value)
        )


class TestPollOnce:

    async def test_ready_on_third_poll(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)
        fake_adapters["vizard"].statuses = [
            scripted_status("processing", progress_hint=40),
            scripted_status("processing"),
            scripted_status("ready", result=clips_result(3)),
        ]

        first = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)
        assert first.queried
        assert first.task.progress == 40

        await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)
        third = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)

        assert third.task.status == TaskStatus.COMPLETED
        assert third.task.progress == 100
        assert third.task.poll_attempts == 3
        assert len(orchestrator.store.artifacts_for(PROJECT_ID, TaskType.CLIPS)) == 3

    async def test_terminal_task_not_queried(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)
        orchestrator.store.set_result(PROJECT_ID, TaskType.CLIPS, clips_result(1))

        outcome = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)

        assert not outcome.queried
        assert fake_adapters["vizard"].queries == 0

    async def test_unsubmitted_task_not_queried(self, orchestrator, project, fake_adapters):
        orchestrator.dispatcher.start_task(USER_ID, PROJECT_ID, "clips")

        outcome = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)

        assert not outcome.queried
        assert outcome.task.progress == 5

    async def test_unknown_task(self, orchestrator, project):
        with pytest.raises(TaskNotFoundError):
            await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.TRANSCRIPTION)

    async def test_stalled_after_attempt_cap(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)

        for _ in range(5):
            outcome = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)

        assert outcome.stalled
        assert outcome.task.status == TaskStatus.PROCESSING
        assert outcome.message == "Taking longer than expected - still processing"

        fake_adapters["vizard"].statuses = [scripted_status("ready", result=clips_result(1))]
        late = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)
        assert late.task.status == TaskStatus.COMPLETED
        assert not late.task.stalled

    async def test_min_poll_gap(self, make_orchestrator, project, fake_adapters):
        orchestrator = make_orchestrator(min_poll_gap_seconds=60.0)
        await start_and_submit(orchestrator)

        first = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)
        second = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)

        assert first.queried
        assert not second.queried
        assert fake_adapters["vizard"].queries == 1

    async def test_query_failures_leave_task_unchanged(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)
        fake_adapters["vizard"].statuses = [
            ProviderTransientFailure("vizard", "HTTP 502"),
            ProviderTransientFailure("vizard", "HTTP 502"),
            ProviderRejected("vizard", "Invalid API key", code="401"),
        ]

        await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)
        outcome = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)

        assert outcome.task.status == TaskStatus.PROCESSING
        assert outcome.task.error is None
        assert outcome.task.progress == 15

    async def test_provider_failure_fails_task(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)
        fake_adapters["vizard"].statuses = [scripted_status("failed", error="Video has no speech")]

        outcome = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)

        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.task.error == "Video has no speech"

    async def test_unregistered_provider_leaves_task_unchanged(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)
        rename_provider(orchestrator, "tasks", "runway")

        outcome = await orchestrator.reconciler.poll_once(PROJECT_ID, TaskType.CLIPS)

        assert outcome.queried
        assert outcome.task.status == TaskStatus.PROCESSING
        assert outcome.task.progress == 15
        assert fake_adapters["vizard"].queries == 0

    async def test_unregistered_provider_on_batch_item(self, orchestrator, project, fake_adapters):
        batch_id = orchestrator.coordinator.dispatch_batch(USER_ID, PROJECT_ID, [{"prompt": "a"}]).task.batch_id
        await orchestrator.coordinator.submit_items(batch_id)
        rename_provider(orchestrator, "batch_items", "runway")

        batch = await orchestrator.coordinator.poll_items(batch_id)

        assert batch.completed == 0
        assert fake_adapters["kie"].queries == 0


class TestPollUntilSettled:

    async def test_loops_until_ready(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator, "transcription")
        fake_adapters["fal"].statuses = [
            scripted_status("processing"),
            scripted_status("processing"),
            StatusResult(state=ProviderState.READY, result={"text": "hello world", "segments": []}),
        ]

        outcome = await orchestrator.reconciler.poll_until_settled(PROJECT_ID, TaskType.TRANSCRIPTION)

        assert outcome.task.status == TaskStatus.COMPLETED
        assert outcome.task.result["text"] == "hello world"
        assert fake_adapters["fal"].queries == 3

    async def test_stops_when_stalled(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)

        outcome = await orchestrator.reconciler.poll_until_settled(PROJECT_ID, TaskType.CLIPS)

        assert outcome.stalled
        assert fake_adapters["vizard"].queries == 5


class TestReconcileStale:

    async def test_sweep_polls_and_resubmits(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)
        orchestrator.dispatcher.start_task(USER_ID, PROJECT_ID, "transcription")
        fake_adapters["vizard"].statuses = [scripted_status("ready", result=clips_result(2))]
        age_task(orchestrator, TaskType.CLIPS, 600)
        age_task(orchestrator, TaskType.TRANSCRIPTION, 600)

        summary = await orchestrator.reconciler.reconcile_stale()

        assert summary["polled"] == 1
        assert summary["resubmitted"] == 1
        assert summary["errors"] == 0
        assert orchestrator.store.get(PROJECT_ID, TaskType.CLIPS).status == TaskStatus.COMPLETED
        transcription = orchestrator.store.get(PROJECT_ID, TaskType.TRANSCRIPTION)
        assert transcription.provider_ref is not None
        assert transcription.progress == 15

    async def test_recent_tasks_left_alone(self, orchestrator, project, fake_adapters):
        await start_and_submit(orchestrator)

        summary = await orchestrator.reconciler.reconcile_stale()

        assert summary == {"polled": 0, "resubmitted": 0, "batches": 0, "errors": 0}
        assert fake_adapters["vizard"].queries == 0

    async def test_live_claim_not_counted_as_resubmitted(self, orchestrator, project, fake_adapters):
        orchestrator.dispatcher.start_task(USER_ID, PROJECT_ID, "transcription")
        claim = orchestrator.guard.ensure_single_submission(PROJECT_ID, TaskType.TRANSCRIPTION)
        assert not claim.already_exists
        age_task(orchestrator, TaskType.TRANSCRIPTION, 600)

        summary = await orchestrator.reconciler.reconcile_stale()

        assert summary["resubmitted"] == 0
        assert fake_adapters["fal"].create_calls == 0

    async def test_deferred_create_not_counted_as_resubmitted(self, orchestrator, project, fake_adapters):
        orchestrator.dispatcher.start_task(USER_ID, PROJECT_ID, "transcription")
        age_task(orchestrator, TaskType.TRANSCRIPTION, 600)
        fake_adapters["fal"].create_errors = [
            ProviderTransientFailure("fal", "HTTP 503"),
            ProviderTransientFailure("fal", "HTTP 503"),
        ]

        summary = await orchestrator.reconciler.reconcile_stale()

        assert summary["resubmitted"] == 0
        assert summary["errors"] == 0
        assert orchestrator.store.get(PROJECT_ID, TaskType.TRANSCRIPTION).status == TaskStatus.PENDING

    async def test_sweep_finishes_quiet_batches(self, orchestrator, project, fake_adapters):
        orchestrator.coordinator.dispatch_batch(USER_ID, PROJECT_ID, [{"prompt": "a"}, {"prompt": "b"}])
        age_task(orchestrator, TaskType.THUMBNAIL_BATCH, 600)
        fake_adapters["kie"].statuses = [
            StatusResult(state=ProviderState.READY, result={"output_url": "https://img.example.com/a.png"}),
            StatusResult(state=ProviderState.READY, result={"output_url": "https://img.example.com/b.png"}),
        ]

        summary = await orchestrator.reconciler.reconcile_stale()

        assert summary["batches"] == 1
        assert len(fake_adapters["kie"].created) == 2
        parent = orchestrator.store.get(PROJECT_ID, TaskType.THUMBNAIL_BATCH)
        assert parent.status == TaskStatus.COMPLETED
