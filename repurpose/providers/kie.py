"""
Kie.ai image-generation adapter (Nano Banana model).

API: https://api.kie.ai
Model: google/nano-banana

One provider task per thumbnail batch item:
1. Create task -> taskId
2. Query recordInfo (or receive callBackUrl) -> state
"""
import json
import logging
from typing import Any, Dict, Optional

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

MODEL = "google/nano-banana"

PROCESSING_STATES = ("waiting", "queuing", "generating")
READY_STATES = ("success", "completed")
FAILED_STATES = ("fail", "failed")


def classify_error(message: str) -> str:
    """Map a Kie error message onto a rejection code."""
    lowered = message.lower()
    if "billing" in lowered or "quota" in lowered or "balance" in lowered:
        return "BILLING"
    if "safety" in lowered or "blocked" in lowered or "content" in lowered:
        return "CONTENT_POLICY"
    return "KIE_ERROR"


def extract_image_url(data: Dict[str, Any]) -> Optional[str]:
    """Find the generated image URL in a recordInfo `data` block."""
    result_json = data.get("resultJson")
    if result_json:
        try:
            parsed = json.loads(result_json) if isinstance(result_json, str) else result_json
            result_urls = parsed.get("resultUrls", [])
            if result_urls:
                return result_urls[0]
        except (json.JSONDecodeError, TypeError, AttributeError):
            pass

    output = data.get("output")
    image_url = (
        data.get("imageUrl") or
        data.get("image_url") or
        (output.get("imageUrl") if isinstance(output, dict) else None) or
        (output.get("image_url") if isinstance(output, dict) else None)
    )

    if not image_url and isinstance(output, list) and output:
        first = output[0] if isinstance(output[0], dict) else {}
        image_url = first.get("url") or first.get("imageUrl")

    return image_url


class KieAdapter(BaseProviderAdapter):
    """Thumbnail generation, one Kie task per batch item."""

    name = "kie"
    task_types = (TaskType.THUMBNAIL_BATCH,)

    @property
    def is_available(self) -> bool:
        return self.config.has_kie

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.kie_api_key or ''}",
            "Content-Type": "application/json",
        }

    def build_request(self, spec: JobSpec) -> Dict[str, Any]:
        options = spec.options
        body: Dict[str, Any] = {
            "model": MODEL,
            "input": {
                "prompt": options["prompt"],
                "output_format": options.get("output_format", "png"),
                "image_size": options.get("image_size", "16:9"),
            },
        }
        if spec.callback_url:
            body["callBackUrl"] = spec.callback_url
        return body

    async def _create(self, spec: JobSpec) -> str:
        body = self.build_request(spec)
        logger.info(f"{self.tag} Generating image: {body['input']['prompt'][:100]}...")

        response = await self._request(
            "POST",
            f"{self.config.kie_base_url}/api/v1/playground/createTask",
            headers=self._headers(),
            json=body,
        )
        result = self._json(response)

        if result.get("code") != 200:
            error_msg = result.get("msg") or "Unknown error"
            code = classify_error(error_msg)
            logger.error(f"{self.tag} API error ({code}): {error_msg}")
            raise ProviderRejected(self.name, error_msg, code=code)

        task_id = (result.get("data") or {}).get("taskId")
        if not task_id:
            raise ProviderRejected(self.name, f"No task ID in response: {result}")

        return str(task_id)

    async def _query(self, job_id: str, task_type: TaskType) -> StatusResult:
        response = await self._request(
            "GET",
            f"{self.config.kie_base_url}/api/v1/playground/recordInfo",
            headers={"Authorization": f"Bearer {self.config.kie_api_key or ''}"},
            params={"taskId": job_id},
        )
        result = self._json(response)

        if result.get("code") != 200:
            error_msg = result.get("msg") or "Unknown error"
            raise ProviderRejected(self.name, f"Query error: {error_msg}", code=classify_error(error_msg))

        status = self._classify(result.get("data") or {})
        status.job_id = job_id
        return status

    @staticmethod
    def _callback_data(payload: Dict[str, Any]) -> Dict[str, Any]:
        data = payload.get("data")
        if data is None:
            return payload
        if not isinstance(data, dict):
            raise ValueError("Kie callback data is not an object")
        return data

    def extract_job_id(self, payload: Dict[str, Any]) -> str:
        task_id = self._callback_data(payload).get("taskId")
        if not task_id or not isinstance(task_id, (str, int)):
            raise ValueError("Kie callback has no taskId")
        return str(task_id)

    def parse_callback(self, payload: Dict[str, Any], task_type: TaskType) -> StatusResult:
        status = self._classify(self._callback_data(payload))
        status.job_id = self.extract_job_id(payload)
        return status

    def _classify(self, data: Dict[str, Any]) -> StatusResult:
        state = str(data.get("state", "")).lower()

        if state in READY_STATES:
            image_url = extract_image_url(data)
            if not image_url:
                return StatusResult(
                    state=ProviderState.FAILED,
                    error="Completed but no image URL found",
                )
            logger.info(f"{self.tag} Image ready: {image_url[:60]}...")
            return StatusResult(
                state=ProviderState.READY,
                result={"output_url": image_url},
                artifacts=[Artifact(kind="thumbnail", url=image_url)],
            )

        if state in FAILED_STATES:
            error = data.get("failMsg") or data.get("error") or "Image generation failed"
            return StatusResult(state=ProviderState.FAILED, error=str(error))

        if state and state not in PROCESSING_STATES:
            logger.debug(f"{self.tag} Unrecognized state {state!r}, treating as processing")
        return StatusResult(state=ProviderState.PROCESSING)
