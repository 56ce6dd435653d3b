"""
Base class for provider adapters.

An adapter translates a provider-neutral JobSpec into one provider's
create-job call, and that provider's status vocabulary (both polled and
pushed by webhook) into the canonical processing/ready/failed states.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx

from repurpose.config import ProvidersConfig
from repurpose.orchestration.models import JobSpec, StatusResult, TaskType

from .exceptions import ProviderRejected, ProviderTransientFailure, ProviderUnavailable
from .retry import with_retry

logger = logging.getLogger(__name__)


class BaseProviderAdapter(ABC):
    """Abstract base class for provider adapters."""

    name: str = ""
    task_types: Tuple[TaskType, ...] = ()
    supports_webhook: bool = True

    def __init__(self, config: ProvidersConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    @property
    def tag(self) -> str:
        return f"[{self.name.upper()}]"

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if provider is configured."""
        pass

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def create_job(self, spec: JobSpec) -> str:
        """
        Submit a job to the provider.

        Returns:
            Provider job id

        Raises:
            ProviderUnavailable: Missing API key or unsupported task type
            ProviderRejected: Provider refused the job
            ProviderTransientFailure: Still failing after bounded retries
        """
        self._ensure_supported(spec.task_type)
        job_id = await self._retrying(lambda: self._create(spec))
        logger.info(
            f"{self.tag} Job created: project={spec.project_id} task={spec.task_type.value} "
            f"provider_job={self.name}:{job_id}"
        )
        return job_id

    async def query_status(self, job_id: str, task_type: TaskType) -> StatusResult:
        """Query job status and map it to the canonical vocabulary."""
        self._ensure_supported(task_type)
        status = await self._retrying(lambda: self._query(job_id, TaskType(task_type)))
        if status.job_id is None:
            status.job_id = job_id
        return status

    @abstractmethod
    def extract_job_id(self, payload: Dict[str, Any]) -> str:
        """
        Provider job id carried by a webhook body.

        Raises:
            ValueError: Payload carries no provider job id
        """
        pass

    @abstractmethod
    def parse_callback(self, payload: Dict[str, Any], task_type: TaskType) -> StatusResult:
        """
        Parse a webhook body for a job whose task type is already known.

        The task type comes from the task the job was recorded on, never
        from the body.

        Raises:
            ValueError: Payload fields have the wrong shape
        """
        pass

    @abstractmethod
    async def _create(self, spec: JobSpec) -> str:
        pass

    @abstractmethod
    async def _query(self, job_id: str, task_type: TaskType) -> StatusResult:
        pass

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _ensure_supported(self, task_type: TaskType) -> None:
        if not self.is_available:
            raise ProviderUnavailable(self.name, "API key not configured")
        if TaskType(task_type) not in self.task_types:
            raise ProviderUnavailable(self.name, f"task type {TaskType(task_type).value} not supported")

    async def _retrying(self, call):
        return await with_retry(
            call,
            attempts=self.config.retry_attempts,
            initial_delay=self.config.retry_initial_delay,
            max_delay=self.config.retry_max_delay,
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Perform one HTTP call and classify failures.

        Network errors, timeouts, 429 and 5xx are transient; any other
        non-2xx response is a rejection.
        """
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransientFailure(self.name, f"Timeout: {e}")
        except httpx.TransportError as e:
            raise ProviderTransientFailure(self.name, f"Network error: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientFailure(
                self.name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code in (401, 403):
            raise ProviderRejected(self.name, "Invalid API key", code=str(response.status_code))
        if response.status_code >= 400:
            raise ProviderRejected(
                self.name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                code=str(response.status_code),
            )

        return response

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            raise ProviderTransientFailure(self.name, f"Invalid JSON response: {response.text[:200]}")
        if not isinstance(data, dict):
            raise ProviderTransientFailure(self.name, f"Unexpected response shape: {type(data).__name__}")
        return data
