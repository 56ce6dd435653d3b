"""
Tests for provider adapters against mocked HTTP transports.
"""
import json

import httpx
import pytest

from repurpose.orchestration.models import JobSpec, ProviderState, TaskType
from repurpose.providers.exceptions import (
    ProviderRejected,
    ProviderTransientFailure,
    ProviderUnavailable,
)
from repurpose.providers.factory import ProviderRegistry
from repurpose.providers.fal import FalAdapter, PERSONA_APP, TRANSCRIPTION_APP
from repurpose.providers.kie import KieAdapter, classify_error, extract_image_url
from repurpose.providers.retry import backoff_delay, with_retry
from repurpose.providers.vizard import VizardAdapter

from conftest import PROJECT_ID, SOURCE_URL, USER_ID


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def job_spec(task_type: TaskType, options=None, source_url: str = SOURCE_URL, item_index=None) -> JobSpec:
    return JobSpec(
        project_id=PROJECT_ID,
        task_type=task_type,
        user_id=USER_ID,
        source_url=source_url,
        options=options or {},
        callback_url="https://api.example.com/webhooks/test?token=abc",
        item_index=item_index,
    )


class TestVizardAdapter:

    def test_build_request_for_remote_file(self, providers_config):
        adapter = VizardAdapter(providers_config)

        body = adapter.build_request(job_spec(TaskType.CLIPS, {
            "language": "es",
            "aspect_ratio": "16:9",
            "clip_length": "short_to_medium",
            "max_clips": 6,
            "subtitles": False,
        }))

        assert body["videoType"] == 1
        assert body["ext"] == "mp4"
        assert body["lang"] == "es"
        assert body["ratioOfClip"] == 4
        assert body["preferLength"] == [1, 2]
        assert body["maxClipNumber"] == 6
        assert body["subtitleSwitch"] == 0
        assert body["webhookUrl"].startswith("https://api.example.com/webhooks/")

    def test_build_request_for_youtube(self, providers_config):
        adapter = VizardAdapter(providers_config)

        body = adapter.build_request(job_spec(TaskType.CLIPS, source_url="https://www.youtube.com/watch?v=abc"))

        assert body["videoType"] == 2
        assert "ext" not in body

    async def test_create_job(self, providers_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("VIZARDAI_API_KEY")
            return httpx.Response(200, json={"code": 2000, "projectId": 98765})

        adapter = VizardAdapter(providers_config, client=mock_client(handler))
        job_id = await adapter.create_job(job_spec(TaskType.CLIPS))

        assert job_id == "98765"
        assert seen["url"].endswith("/project/create")
        assert seen["key"] == "test-vizard-key"

    async def test_create_rejected_by_error_code(self, providers_config):
        adapter = VizardAdapter(
            providers_config,
            client=mock_client(lambda r: httpx.Response(200, json={"code": 4008, "errMsg": "Video too long"})),
        )

        with pytest.raises(ProviderRejected) as exc_info:
            await adapter.create_job(job_spec(TaskType.CLIPS))

        assert exc_info.value.message == "Video too long"
        assert exc_info.value.code == "4008"

    async def test_server_errors_are_transient_and_retried(self, providers_config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="upstream unavailable")

        adapter = VizardAdapter(providers_config, client=mock_client(handler))

        with pytest.raises(ProviderTransientFailure) as exc_info:
            await adapter.create_job(job_spec(TaskType.CLIPS))

        assert exc_info.value.status_code == 503
        assert len(calls) == providers_config.retry_attempts

    async def test_auth_failure_is_rejection(self, providers_config):
        adapter = VizardAdapter(providers_config, client=mock_client(lambda r: httpx.Response(401)))

        with pytest.raises(ProviderRejected, match="Invalid API key"):
            await adapter.create_job(job_spec(TaskType.CLIPS))

    async def test_query_status_codes(self, providers_config):
        responses = [
            {"code": 1000},
            {
                "code": 2000,
                "videos": [
                    {"videoId": 1, "videoUrl": "https://cdn.vizard.ai/1.mp4", "title": "Hook", "videoMsDuration": 31500, "viralScore": "9.1"},
                    {"videoId": 2, "videoUrl": "https://cdn.vizard.ai/2.mp4", "videoMsDuration": 45000},
                ],
                "creditsUsed": 3,
            },
            {"code": 4004, "errMsg": "No speech detected"},
        ]
        adapter = VizardAdapter(
            providers_config,
            client=mock_client(lambda r: httpx.Response(200, json=responses.pop(0))),
        )

        processing = await adapter.query_status("55", TaskType.CLIPS)
        ready = await adapter.query_status("55", TaskType.CLIPS)
        failed = await adapter.query_status("55", TaskType.CLIPS)

        assert processing.state == ProviderState.PROCESSING
        assert ready.state == ProviderState.READY
        assert ready.job_id == "55"
        assert ready.result["clips"][0]["duration_seconds"] == 31.5
        assert ready.result["clips"][1]["title"] == "Clip 2"
        assert [a.kind for a in ready.artifacts] == ["clip", "clip"]
        assert failed.state == ProviderState.FAILED
        assert failed.error == "No speech detected"

    def test_parse_callback(self, providers_config):
        adapter = VizardAdapter(providers_config)

        status = adapter.parse_callback({"projectId": 98765, "code": 1000}, TaskType.CLIPS)

        assert status.job_id == "98765"
        assert status.state == ProviderState.PROCESSING
        with pytest.raises(ValueError):
            adapter.extract_job_id({"code": 2000})

    def test_callback_with_malformed_videos(self, providers_config):
        adapter = VizardAdapter(providers_config)

        with pytest.raises(ValueError):
            adapter.parse_callback({"projectId": 77, "code": 2000, "videos": "oops"}, TaskType.CLIPS)
        with pytest.raises(ValueError):
            adapter.parse_callback({"projectId": 77, "code": 2000, "videos": ["oops"]}, TaskType.CLIPS)

    async def test_missing_key_is_unavailable(self):
        from repurpose.config import ProvidersConfig

        adapter = VizardAdapter(ProvidersConfig())

        with pytest.raises(ProviderUnavailable):
            await adapter.create_job(job_spec(TaskType.CLIPS))

    async def test_unsupported_task_type(self, providers_config):
        adapter = VizardAdapter(providers_config)

        with pytest.raises(ProviderUnavailable, match="not supported"):
            await adapter.create_job(job_spec(TaskType.TRANSCRIPTION))


class TestFalAdapter:

    async def test_persona_submission(self, providers_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["webhook"] = request.url.params.get("fal_webhook")
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"request_id": "req-42"})

        adapter = FalAdapter(providers_config, client=mock_client(handler))
        job_id = await adapter.create_job(job_spec(TaskType.PERSONA_TRAINING, {
            "images_url": "https://cdn.example.com/photos.zip",
            "trigger_phrase": "ohwx person",
            "steps": 1000,
        }))

        assert job_id == "req-42"
        assert seen["path"] == f"/{PERSONA_APP}"
        assert seen["webhook"] == "https://api.example.com/webhooks/test?token=abc"
        assert seen["auth"] == "Key test-fal-key"
        assert seen["body"]["images_data_url"] == "https://cdn.example.com/photos.zip"
        assert seen["body"]["steps"] == 1000

    def test_transcription_input(self, providers_config):
        adapter = FalAdapter(providers_config)

        arguments = adapter.build_input(job_spec(TaskType.TRANSCRIPTION, {"language": "de"}))

        assert arguments == {
            "audio_url": SOURCE_URL,
            "task": "transcribe",
            "chunk_level": "segment",
            "language": "de",
        }

    async def test_query_completed_fetches_result(self, providers_config):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(200, json={
                "text": " hello there ",
                "chunks": [{"timestamp": [0.0, 1.5], "text": " hello there "}],
                "inferred_languages": ["en"],
            })

        adapter = FalAdapter(providers_config, client=mock_client(handler))
        status = await adapter.query_status("req-7", TaskType.TRANSCRIPTION)

        assert status.state == ProviderState.READY
        assert status.result["text"] == "hello there"
        assert status.result["segments"] == [{"start": 0.0, "end": 1.5, "text": "hello there"}]
        assert status.result["language"] == "en"
        assert status.artifacts[0].url.endswith(f"{TRANSCRIPTION_APP}/requests/req-7")

    async def test_query_in_progress(self, providers_config):
        adapter = FalAdapter(
            providers_config,
            client=mock_client(lambda r: httpx.Response(200, json={"status": "IN_QUEUE", "queue_position": 3})),
        )

        status = await adapter.query_status("req-7", TaskType.PERSONA_TRAINING)

        assert status.state == ProviderState.PROCESSING

    def test_callback_ok_persona(self, providers_config):
        adapter = FalAdapter(providers_config)

        status = adapter.parse_callback({
            "request_id": "req-9",
            "status": "OK",
            "payload": {
                "diffusers_lora_file": {"url": "https://fal.media/lora.safetensors"},
                "config_file": {"url": "https://fal.media/config.json"},
            },
        }, TaskType.PERSONA_TRAINING)

        assert status.state == ProviderState.READY
        assert status.job_id == "req-9"
        assert status.result["lora_url"] == "https://fal.media/lora.safetensors"
        assert status.artifacts[0].kind == "lora"

    def test_callback_error(self, providers_config):
        adapter = FalAdapter(providers_config)

        status = adapter.parse_callback(
            {"request_id": "req-9", "status": "ERROR", "error": "Invalid zip"}, TaskType.PERSONA_TRAINING
        )

        assert status.state == ProviderState.FAILED
        assert status.error == "Invalid zip"

    def test_persona_callback_is_never_read_as_transcript(self, providers_config):
        adapter = FalAdapter(providers_config)

        empty = adapter.parse_callback({"request_id": "req-1", "status": "OK", "payload": {}}, TaskType.PERSONA_TRAINING)
        undelivered = adapter.parse_callback(
            {"request_id": "req-1", "status": "OK", "payload": None, "payload_error": "Payload too large"},
            TaskType.PERSONA_TRAINING,
        )

        assert empty.state == ProviderState.FAILED
        assert empty.error == "Training completed without a LoRA file"
        assert undelivered.state == ProviderState.PROCESSING
        assert undelivered.artifacts == []

    def test_callback_with_malformed_payload(self, providers_config):
        adapter = FalAdapter(providers_config)

        with pytest.raises(ValueError):
            adapter.parse_callback({"request_id": "req-1", "status": "OK", "payload": "x"}, TaskType.TRANSCRIPTION)
        with pytest.raises(ValueError):
            adapter.extract_job_id({"status": "OK"})


class TestKieAdapter:

    async def test_create_task(self, providers_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "kie-1"}})

        adapter = KieAdapter(providers_config, client=mock_client(handler))
        job_id = await adapter.create_job(job_spec(TaskType.THUMBNAIL_BATCH, {"prompt": "A neon thumbnail"}, item_index=0))

        assert job_id == "kie-1"
        assert seen["body"]["model"] == "google/nano-banana"
        assert seen["body"]["input"]["prompt"] == "A neon thumbnail"
        assert seen["body"]["callBackUrl"].startswith("https://api.example.com/")

    async def test_create_error_classified(self, providers_config):
        adapter = KieAdapter(
            providers_config,
            client=mock_client(lambda r: httpx.Response(200, json={"code": 402, "msg": "Insufficient balance"})),
        )

        with pytest.raises(ProviderRejected) as exc_info:
            await adapter.create_job(job_spec(TaskType.THUMBNAIL_BATCH, {"prompt": "x"}))

        assert exc_info.value.code == "BILLING"

    async def test_query_states(self, providers_config):
        responses = [
            {"code": 200, "data": {"taskId": "kie-1", "state": "generating"}},
            {"code": 200, "data": {"taskId": "kie-1", "state": "success", "resultJson": json.dumps({"resultUrls": ["https://img.kie.ai/1.png"]})}},
            {"code": 200, "data": {"taskId": "kie-1", "state": "fail", "failMsg": "Prompt blocked"}},
        ]
        adapter = KieAdapter(
            providers_config,
            client=mock_client(lambda r: httpx.Response(200, json=responses.pop(0))),
        )

        generating = await adapter.query_status("kie-1", TaskType.THUMBNAIL_BATCH)
        ready = await adapter.query_status("kie-1", TaskType.THUMBNAIL_BATCH)
        failed = await adapter.query_status("kie-1", TaskType.THUMBNAIL_BATCH)

        assert generating.state == ProviderState.PROCESSING
        assert ready.result == {"output_url": "https://img.kie.ai/1.png"}
        assert failed.error == "Prompt blocked"

    def test_callback(self, providers_config):
        adapter = KieAdapter(providers_config)

        status = adapter.parse_callback({
            "code": 200,
            "data": {"taskId": "kie-3", "state": "success", "resultJson": {"resultUrls": ["https://img.kie.ai/3.png"]}},
        }, TaskType.THUMBNAIL_BATCH)

        assert status.job_id == "kie-3"
        assert status.result["output_url"] == "https://img.kie.ai/3.png"

    def test_callback_with_malformed_data(self, providers_config):
        adapter = KieAdapter(providers_config)

        with pytest.raises(ValueError):
            adapter.extract_job_id({"code": 200, "data": "oops"})
        with pytest.raises(ValueError):
            adapter.parse_callback({"code": 200, "data": ["kie-3"]}, TaskType.THUMBNAIL_BATCH)

    def test_extract_image_url_fallbacks(self):
        assert extract_image_url({"imageUrl": "https://a/1.png"}) == "https://a/1.png"
        assert extract_image_url({"output": [{"url": "https://a/2.png"}]}) == "https://a/2.png"
        assert extract_image_url({"resultJson": "not json"}) is None

    def test_classify_error(self):
        assert classify_error("Content blocked by safety system") == "CONTENT_POLICY"
        assert classify_error("Quota exceeded") == "BILLING"
        assert classify_error("Something else") == "KIE_ERROR"


class TestRegistry:

    def test_lookup_by_name_and_task_type(self, providers_config):
        registry = ProviderRegistry.create(providers_config)

        assert registry.has("vizard") and registry.has("fal") and registry.has("kie")
        assert registry.for_task_type(TaskType.TRANSCRIPTION).name == "fal"
        assert registry.for_task_type(TaskType.THUMBNAIL_BATCH).name == "kie"
        with pytest.raises(ProviderUnavailable):
            registry.get("runway")


class TestRetry:

    async def test_transient_retried_with_backoff(self):
        delays = []
        attempts = []

        async def sleep(seconds):
            delays.append(seconds)

        async def call():
            attempts.append(1)
            if len(attempts) < 3:
                raise ProviderTransientFailure("fal", "Timeout")
            return "ok"

        result = await with_retry(call, attempts=3, initial_delay=1.0, max_delay=30.0, sleep=sleep)

        assert result == "ok"
        assert delays == [1.0, 2.0]

    async def test_rejection_not_retried(self):
        attempts = []

        async def call():
            attempts.append(1)
            raise ProviderRejected("fal", "bad input")

        with pytest.raises(ProviderRejected):
            await with_retry(call, attempts=5, initial_delay=0.0)

        assert len(attempts) == 1

    def test_backoff_capped(self):
        assert backoff_delay(1, 1.0, 30.0) == 1.0
        assert backoff_delay(4, 1.0, 30.0) == 8.0
        assert backoff_delay(10, 1.0, 30.0) == 30.0
