"""
Celery application configuration.
Workers for provider submission and status reconciliation.

Messages carry only keys ((project_id, task_type) or batch_id); delivery is
at-least-once and every task is idempotent against the database. Tasks only
wait on provider HTTP calls, so time limits are short and concurrency high.
"""
from celery import Celery
from kombu import Queue

from repurpose.config import get_config

config = get_config()

celery_app = Celery(
    "repurpose",
    broker=config.celery_broker_url,
    backend=config.celery_result_backend,
    include=["repurpose.orchestration.tasks"],
)

# Longest single poll loop: max attempts at the capped interval
_poll_ceiling = int(
    config.orchestration.max_poll_attempts * config.orchestration.poll_max_interval_seconds
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_track_started=True,
    task_soft_time_limit=_poll_ceiling,
    task_time_limit=_poll_ceiling + 60,

    worker_prefetch_multiplier=1,
    worker_concurrency=8,

    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    task_queues=(
        Queue("default", routing_key="default"),
        Queue("submission", routing_key="submission.#"),
        Queue("polling", routing_key="polling.#"),
    ),
    task_default_queue="default",
    task_default_exchange="orchestration",
    task_default_routing_key="default",

    task_routes={
        "orchestration.submit_task": {"queue": "submission"},
        "orchestration.submit_batch_items": {"queue": "submission"},
        "orchestration.reconcile_task": {"queue": "polling"},
        "orchestration.reconcile_stale_tasks": {"queue": "polling"},
    },

    beat_schedule={
        "reconcile-stale-tasks": {
            "task": "orchestration.reconcile_stale_tasks",
            "schedule": max(30.0, config.orchestration.webhook_grace_seconds / 2),
        },
    },
)

# Visibility timeout must outlast the longest poll loop
celery_app.conf.broker_transport_options = {
    "visibility_timeout": _poll_ceiling + 3600,
    "socket_timeout": 30,
    "socket_connect_timeout": 30,
}
