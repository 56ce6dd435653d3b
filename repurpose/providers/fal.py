"""
fal.ai queue adapter.

Serves two task types over the same queue API:
- persona-training: fal-ai/flux-lora-portrait-trainer (LoRA portrait trainer)
- transcription:    fal-ai/whisper

Queue API:
1. POST {queue}/{app_id}?fal_webhook=...  -> request_id
2. GET  {queue}/{app_id}/requests/{id}/status -> IN_QUEUE | IN_PROGRESS | COMPLETED
3. GET  {queue}/{app_id}/requests/{id}  -> result payload
Webhook body: {request_id, status: OK | ERROR, payload, error}
"""
import logging
from typing import Any, Dict, List, Optional

from repurpose.orchestration.models import (
    Artifact,
    JobSpec,
    ProviderState,
    StatusResult,
    TaskType,
)

from .base import BaseProviderAdapter
from .exceptions import ProviderRejected

logger = logging.getLogger(__name__)

PERSONA_APP = "fal-ai/flux-lora-portrait-trainer"
TRANSCRIPTION_APP = "fal-ai/whisper"

APPS = {
    TaskType.PERSONA_TRAINING: PERSONA_APP,
    TaskType.TRANSCRIPTION: TRANSCRIPTION_APP,
}

DEFAULT_LEARNING_RATE = 0.00009
DEFAULT_STEPS = 2500

PROCESSING_STATES = ("IN_QUEUE", "IN_PROGRESS")


class FalAdapter(BaseProviderAdapter):
    """LoRA persona training and Whisper transcription via the fal queue."""

    name = "fal"
    task_types = (TaskType.PERSONA_TRAINING, TaskType.TRANSCRIPTION)

    @property
    def is_available(self) -> bool:
        return self.config.has_fal

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Key {self.config.fal_api_key or ''}",
            "Content-Type": "application/json",
        }

    def build_input(self, spec: JobSpec) -> Dict[str, Any]:
        """Translate task options into the fal app's input arguments."""
        options = spec.options

        if spec.task_type == TaskType.PERSONA_TRAINING:
            return {
                "images_data_url": options.get("images_url") or spec.source_url,
                "trigger_phrase": options.get("trigger_phrase"),
                "learning_rate": options.get("learning_rate", DEFAULT_LEARNING_RATE),
                "steps": options.get("steps", DEFAULT_STEPS),
                "multiresolution_training": options.get("multiresolution_training", True),
                "subject_crop": options.get("subject_crop", True),
            }

        arguments = {
            "audio_url": spec.source_url,
            "task": "transcribe",
            "chunk_level": "segment",
        }
        if options.get("language"):
            arguments["language"] = options["language"]
        return arguments

    async def _create(self, spec: JobSpec) -> str:
        app_id = APPS[spec.task_type]
        params = {"fal_webhook": spec.callback_url} if spec.callback_url else None

        logger.info(f"{self.tag} Submitting to {app_id}")
        response = await self._request(
            "POST",
            f"{self.config.fal_queue_url}/{app_id}",
            headers=self._headers(),
            params=params,
            json=self.build_input(spec),
        )
        data = self._json(response)

        request_id = data.get("request_id")
        if not request_id:
            raise ProviderRejected(self.name, f"No request_id in response: {data}")
        return str(request_id)

    async def _query(self, job_id: str, task_type: TaskType) -> StatusResult:
        app_id = APPS[task_type]
        base = f"{self.config.fal_queue_url}/{app_id}/requests/{job_id}"

        response = await self._request("GET", f"{base}/status", headers=self._headers())
        data = self._json(response)
        state = str(data.get("status", "")).upper()

        if state in PROCESSING_STATES:
            return StatusResult(state=ProviderState.PROCESSING, job_id=job_id)

        if state != "COMPLETED":
            logger.warning(f"{self.tag} Unknown queue status {state!r} for {job_id}")
            return StatusResult(state=ProviderState.PROCESSING, job_id=job_id)

        try:
            result_response = await self._request("GET", base, headers=self._headers())
        except ProviderRejected as e:
            logger.error(f"{self.tag} Result fetch failed for {job_id}: {e.message}")
            return StatusResult(state=ProviderState.FAILED, job_id=job_id, error=e.message)

        status = self._ready(task_type, self._json(result_response), base)
        status.job_id = job_id
        return status

    def extract_job_id(self, payload: Dict[str, Any]) -> str:
        request_id = payload.get("request_id") or payload.get("gateway_request_id")
        if not request_id or not isinstance(request_id, (str, int)):
            raise ValueError("fal callback has no request_id")
        return str(request_id)

    def parse_callback(self, payload: Dict[str, Any], task_type: TaskType) -> StatusResult:
        request_id = self.extract_job_id(payload)
        if task_type not in APPS:
            raise ValueError(f"fal does not serve task type {task_type.value}")

        status = str(payload.get("status", "")).upper()
        if status == "ERROR":
            error = payload.get("error") or "Request failed"
            if not isinstance(error, str):
                error = str(error)
            return StatusResult(state=ProviderState.FAILED, job_id=request_id, error=error)

        if status != "OK":
            return StatusResult(state=ProviderState.PROCESSING, job_id=request_id)

        result = payload.get("payload")
        if result is None:
            # Result too large to deliver inline; the next poll fetches it
            logger.warning(
                f"{self.tag} Callback for {request_id} without payload: "
                f"{payload.get('payload_error') or 'no payload_error'}"
            )
            return StatusResult(state=ProviderState.PROCESSING, job_id=request_id)
        if not isinstance(result, dict):
            raise ValueError("fal callback payload is not an object")

        response_url = f"{self.config.fal_queue_url}/{APPS[task_type]}/requests/{request_id}"
        ready = self._ready(task_type, result, response_url)
        ready.job_id = request_id
        return ready

    def _ready(self, task_type: TaskType, data: Dict[str, Any], response_url: str) -> StatusResult:
        if task_type == TaskType.PERSONA_TRAINING:
            return self._persona_ready(data)
        return self._transcript_ready(data, response_url)

    def _persona_ready(self, data: Dict[str, Any]) -> StatusResult:
        lora_url = _file_url(data.get("diffusers_lora_file"))
        config_url = _file_url(data.get("config_file"))

        if not lora_url:
            return StatusResult(state=ProviderState.FAILED, error="Training completed without a LoRA file")

        logger.info(f"{self.tag} LoRA ready: {lora_url[:60]}...")
        return StatusResult(
            state=ProviderState.READY,
            result={"lora_url": lora_url, "config_url": config_url},
            artifacts=[Artifact(kind="lora", url=lora_url, metadata={"config_url": config_url})],
        )

    def _transcript_ready(self, data: Dict[str, Any], response_url: str) -> StatusResult:
        chunks = data.get("chunks")
        segments = _segments(chunks if isinstance(chunks, list) else [])
        text = data.get("text")
        if not isinstance(text, str) or not text:
            text = " ".join(s["text"] for s in segments)
        languages = data.get("inferred_languages")
        if not isinstance(languages, list):
            languages = []

        return StatusResult(
            state=ProviderState.READY,
            result={
                "text": text.strip(),
                "segments": segments,
                "language": languages[0] if languages else None,
            },
            artifacts=[
                Artifact(
                    kind="transcript",
                    url=response_url,
                    metadata={"segments": len(segments)},
                )
            ],
        )


def _file_url(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("url")
    if isinstance(value, str):
        return value
    return None


def _segments(chunks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    segments = []
    for chunk in chunks:
        if not isinstance(chunk, dict):
            continue
        timestamp = chunk.get("timestamp") or [None, None]
        start, end = (list(timestamp) + [None, None])[:2]
        segments.append({
            "start": start,
            "end": end,
            "text": (chunk.get("text") or "").strip(),
        })
    return segments
