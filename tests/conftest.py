"""
Pytest configuration and fixtures for orchestration tests.
"""
import os
import json
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Set test environment before importing repurpose modules
os.environ["TASK_QUEUE"] = "inline"
os.environ["DATABASE_PATH"] = os.path.join(tempfile.gettempdir(), "repurpose-test.db")
os.environ["DEBUG"] = "true"

from repurpose.config import AppConfig, OrchestrationConfig, ProvidersConfig, WebhookConfig
from repurpose.orchestration.factory import Orchestrator
from repurpose.orchestration.models import (
    Artifact,
    JobSpec,
    ProviderState,
    StatusResult,
    TaskType,
)
from repurpose.orchestration.webhooks import webhook_token
from repurpose.persistence.database import Database
from repurpose.providers.base import BaseProviderAdapter
from repurpose.providers.factory import ProviderRegistry

WEBHOOK_SECRET = "test-webhook-secret"
USER_ID = "user-1"
PROJECT_ID = "proj_1"
SOURCE_URL = "https://cdn.example.com/uploads/video.mp4"


class FakeAdapter(BaseProviderAdapter):
    """
    Scripted provider adapter.

    `create_errors` and `statuses` are consumed in order; an exception in
    either list is raised instead of returned.
    """

    def __init__(self, name: str, task_types, config: ProvidersConfig):
        self.name = name
        self.task_types = tuple(task_types)
        super().__init__(config)
        self.created: List[JobSpec] = []
        self.create_calls = 0
        self.create_errors: List[Exception] = []
        self.statuses: List[Any] = []
        self.queries = 0
        self.parsed_task_types: List[TaskType] = []

    @property
    def is_available(self) -> bool:
        return True

    async def _create(self, spec: JobSpec) -> str:
        self.create_calls += 1
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.created.append(spec)
        return f"{self.name}-job-{len(self.created)}"

    async def _query(self, job_id: str, task_type: TaskType) -> StatusResult:
        self.queries += 1
        if self.statuses:
            status = self.statuses.pop(0)
            if isinstance(status, Exception):
                raise status
            return status
        return StatusResult(state=ProviderState.PROCESSING)

    def extract_job_id(self, payload: Dict[str, Any]) -> str:
        job_id = payload.get("job_id")
        if not job_id:
            raise ValueError("callback has no job_id")
        return job_id

    def parse_callback(self, payload: Dict[str, Any], task_type: TaskType) -> StatusResult:
        self.parsed_task_types.append(task_type)
        return scripted_status(
            payload.get("state", "processing"),
            result=payload.get("result"),
            error=payload.get("error"),
            job_id=self.extract_job_id(payload),
        )


def scripted_status(state: str, result=None, error=None, job_id=None, progress_hint=None) -> StatusResult:
    """Build a canonical status the way a real adapter would."""
    artifacts = []
    result = result or None
    if result and "clips" in result:
        artifacts = [Artifact(kind="clip", url=clip["url"]) for clip in result["clips"]]
    elif result and "output_url" in result:
        artifacts = [Artifact(kind="thumbnail", url=result["output_url"])]

    return StatusResult(
        state=ProviderState(state),
        job_id=job_id,
        progress_hint=progress_hint,
        result=result,
        artifacts=artifacts,
        error=error,
    )


def callback_body(job_id: str, state: str, result=None, error=None) -> bytes:
    """Raw webhook body understood by FakeAdapter.parse_callback."""
    payload = {"job_id": job_id, "state": state}
    if result is not None:
        payload["result"] = result
    if error is not None:
        payload["error"] = error
    return json.dumps(payload).encode()


def clips_result(count: int = 4) -> Dict[str, Any]:
    return {
        "clips": [
            {"url": f"https://cdn.vizard.ai/clips/{i}.mp4", "title": f"Clip {i + 1}"}
            for i in range(count)
        ]
    }


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def providers_config():
    """Provider config with keys set, instant retries and generous rate limits."""
    return ProvidersConfig(
        vizard_api_key="test-vizard-key",
        fal_api_key="test-fal-key",
        kie_api_key="test-kie-key",
        vizard_rate_per_minute=100,
        fal_rate_per_minute=100,
        kie_rate_per_minute=100,
        retry_attempts=2,
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def app_config(temp_dir, providers_config):
    """Application config pointing at a temporary database."""
    return AppConfig(
        providers=providers_config,
        webhooks=WebhookConfig(public_base_url="https://api.example.com", secret=WEBHOOK_SECRET),
        orchestration=OrchestrationConfig(
            max_poll_attempts=5,
            poll_interval_seconds=0.0,
            min_poll_gap_seconds=0.0,
        ),
        database_path=str(temp_dir / "test.db"),
    )


@pytest.fixture
def db(app_config):
    database = Database(app_config.database_path)
    yield database
    database.close()


@pytest.fixture
def fake_adapters(providers_config):
    return {
        "vizard": FakeAdapter("vizard", [TaskType.CLIPS], providers_config),
        "fal": FakeAdapter("fal", [TaskType.PERSONA_TRAINING, TaskType.TRANSCRIPTION], providers_config),
        "kie": FakeAdapter("kie", [TaskType.THUMBNAIL_BATCH], providers_config),
    }


@pytest.fixture
def registry(fake_adapters):
    return ProviderRegistry(fake_adapters.values())


@pytest.fixture
def make_orchestrator(app_config, registry, db):
    """Build an orchestrator, optionally overriding orchestration settings."""
    def build(**overrides) -> Orchestrator:
        config = app_config
        if overrides:
            config = replace(app_config, orchestration=replace(app_config.orchestration, **overrides))
        return Orchestrator.build(config, registry=registry, db=db, sleep=no_sleep)

    return build


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def project(orchestrator):
    """A project owned by USER_ID."""
    return orchestrator.projects.create(PROJECT_ID, USER_ID, SOURCE_URL)


@pytest.fixture
def token():
    """Webhook token factory."""
    return lambda provider: webhook_token(WEBHOOK_SECRET, provider)


# FastAPI test client fixture
@pytest.fixture
def test_client(orchestrator):
    """Create a test client wired to the test orchestrator."""
    from fastapi.testclient import TestClient
    from repurpose.api.main import create_app
    from repurpose.orchestration.factory import get_orchestrator

    app = create_app(debug=True, require_auth=True)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    return TestClient(app)


@pytest.fixture
def auth_headers():
    return {"X-User-Id": USER_ID}
