"""
Vizard clip-generation adapter.

API: https://elb-api.vizard.ai/hvizard-server-front/open-api/v1
Response codes: 1000 = still processing, 2000 = success, >= 4000 = error.
"""
import logging
from typing import Any, Dict, List
from urllib.parse import urlparse

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

CODE_PROCESSING = 1000
CODE_SUCCESS = 2000
CODE_ERROR_MIN = 4000

VIDEO_TYPE_REMOTE_FILE = 1
VIDEO_TYPE_YOUTUBE = 2

ASPECT_RATIOS = {
    "9:16": 1,
    "1:1": 2,
    "4:5": 3,
    "16:9": 4,
}

CLIP_LENGTHS = {
    "auto": [0],
    "ultra_short": [1],
    "short": [2],
    "medium": [3],
    "long": [4],
    "short_to_medium": [1, 2],
    "short_to_long": [1, 2, 3],
}


def video_type_for(url: str) -> int:
    host = (urlparse(url).hostname or "").lower()
    if host.endswith("youtube.com") or host.endswith("youtu.be"):
        return VIDEO_TYPE_YOUTUBE
    return VIDEO_TYPE_REMOTE_FILE


def file_extension(url: str) -> str:
    path = urlparse(url).path
    if "." in path.rsplit("/", 1)[-1]:
        return path.rsplit(".", 1)[-1].lower()
    return "mp4"


class VizardAdapter(BaseProviderAdapter):
    """Clip extraction via Vizard projects."""

    name = "vizard"
    task_types = (TaskType.CLIPS,)

    @property
    def is_available(self) -> bool:
        return self.config.has_vizard

    def _headers(self) -> Dict[str, str]:
        return {
            "VIZARDAI_API_KEY": self.config.vizard_api_key or "",
            "Content-Type": "application/json",
        }

    def build_request(self, spec: JobSpec) -> Dict[str, Any]:
        """Translate clip options into Vizard's create-project body."""
        options = spec.options
        video_type = video_type_for(spec.source_url)

        body: Dict[str, Any] = {
            "lang": options.get("language", "en"),
            "preferLength": CLIP_LENGTHS[options.get("clip_length", "auto")],
            "videoUrl": spec.source_url,
            "videoType": video_type,
            "ratioOfClip": ASPECT_RATIOS[options.get("aspect_ratio", "9:16")],
            "subtitleSwitch": 1 if options.get("subtitles", True) else 0,
        }
        if video_type == VIDEO_TYPE_REMOTE_FILE:
            body["ext"] = file_extension(spec.source_url)
        if options.get("max_clips"):
            body["maxClipNumber"] = int(options["max_clips"])
        if options.get("project_name"):
            body["projectName"] = options["project_name"]
        if spec.callback_url:
            body["webhookUrl"] = spec.callback_url

        return body

    async def _create(self, spec: JobSpec) -> str:
        body = self.build_request(spec)
        logger.info(f"{self.tag} Creating project: videoType={body['videoType']} lang={body['lang']}")

        response = await self._request(
            "POST",
            f"{self.config.vizard_base_url}/project/create",
            headers=self._headers(),
            json=body,
        )
        data = self._json(response)

        if data.get("code") != CODE_SUCCESS:
            message = data.get("errMsg") or f"Vizard error: {data.get('code')}"
            logger.error(f"{self.tag} Project creation failed: {message}")
            raise ProviderRejected(self.name, message, code=str(data.get("code")))

        project_id = data.get("projectId")
        if not project_id:
            raise ProviderRejected(self.name, f"No projectId in response: {data}")

        return str(project_id)

    async def _query(self, job_id: str, task_type: TaskType) -> StatusResult:
        response = await self._request(
            "GET",
            f"{self.config.vizard_base_url}/project/query/{job_id}",
            headers={"VIZARDAI_API_KEY": self.config.vizard_api_key or ""},
        )
        data = self._json(response)
        status = self._classify(data)
        status.job_id = job_id
        return status

    def extract_job_id(self, payload: Dict[str, Any]) -> str:
        project_id = payload.get("projectId")
        if project_id is None or project_id == "" or isinstance(project_id, (dict, list)):
            raise ValueError("Vizard callback has no projectId")
        return str(project_id)

    def parse_callback(self, payload: Dict[str, Any], task_type: TaskType) -> StatusResult:
        videos = payload.get("videos")
        if videos is not None and not (
            isinstance(videos, list) and all(isinstance(v, dict) for v in videos)
        ):
            raise ValueError("Vizard callback videos is not a list of objects")

        status = self._classify(payload)
        status.job_id = self.extract_job_id(payload)
        return status

    def _classify(self, data: Dict[str, Any]) -> StatusResult:
        code = data.get("code")
        if not isinstance(code, int):
            try:
                code = int(code)
            except (TypeError, ValueError):
                code = None

        if code == CODE_SUCCESS:
            clips = self._normalize_clips(data.get("videos") or [])
            logger.info(f"{self.tag} Project ready with {len(clips)} clips")
            return StatusResult(
                state=ProviderState.READY,
                result={"clips": clips, "credits_used": data.get("creditsUsed")},
                artifacts=[
                    Artifact(
                        kind="clip",
                        url=clip["url"],
                        metadata={k: v for k, v in clip.items() if k != "url"},
                    )
                    for clip in clips
                ],
            )

        if code is not None and code >= CODE_ERROR_MIN:
            return StatusResult(
                state=ProviderState.FAILED,
                error=data.get("errMsg") or f"Vizard error: {code}",
            )

        if code != CODE_PROCESSING:
            logger.debug(f"{self.tag} Unrecognized code {code}, treating as processing")
        return StatusResult(state=ProviderState.PROCESSING)

    def _normalize_clips(self, videos: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        clips = []
        for index, video in enumerate(videos):
            url = video.get("videoUrl")
            if not url:
                continue
            duration_ms = video.get("videoMsDuration") or 0
            clips.append({
                "url": url,
                "clip_id": str(video.get("videoId", index)),
                "title": video.get("title") or f"Clip {index + 1}",
                "viral_score": video.get("viralScore"),
                "viral_reason": video.get("viralReason"),
                "duration_seconds": round(duration_ms / 1000, 2),
                "transcript": video.get("transcript"),
            })
        return clips
