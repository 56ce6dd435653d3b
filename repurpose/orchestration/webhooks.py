"""
Webhook Receiver.

Providers push completion/failure notifications to
`/webhooks/{provider}?token=...`. The owning task is resolved only through
the (provider, provider job id) pair recorded at submission; project ids in
the body are never trusted.
"""
import hmac
import json
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from repurpose.config import WebhookConfig
from repurpose.persistence.tasks_repo import TaskProgressStore
from repurpose.persistence.batch_repo import BatchRepository
from repurpose.providers.factory import ProviderRegistry

from .completion import StatusApplier
from .exceptions import MalformedWebhookError, UnknownProviderError, WebhookAuthError
from .models import ProviderJobRef, StatusResult, TaskType

logger = logging.getLogger(__name__)


def webhook_token(secret: str, provider: str) -> str:
    """Per-provider callback token embedded in the callback URL."""
    return hmac.new(secret.encode(), provider.encode(), hashlib.sha256).hexdigest()


def callback_url(config: WebhookConfig, provider: str) -> Optional[str]:
    """Public callback URL for a provider, or None when callbacks are off."""
    if not config.callbacks_enabled:
        return None
    url = f"{config.public_base_url.rstrip('/')}/webhooks/{provider}"
    if config.verification_enabled:
        url = f"{url}?token={webhook_token(config.secret, provider)}"
    return url


@dataclass
class WebhookAck:
    """Body returned to the provider. Always sent with HTTP 200."""
    provider: str
    job_id: str
    matched: bool
    applied: bool = False
    state: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "received": True,
            "provider": self.provider,
            "job_id": self.job_id,
            "matched": self.matched,
            "applied": self.applied,
            "state": self.state,
            "error": self.error,
        }


class WebhookReceiver:
    """Verifies, parses and applies provider callbacks."""

    def __init__(
        self,
        config: WebhookConfig,
        registry: ProviderRegistry,
        store: TaskProgressStore,
        batches: BatchRepository,
        applier: StatusApplier,
    ):
        self.config = config
        self.registry = registry
        self.store = store
        self.batches = batches
        self.applier = applier

    def verify(self, provider: str, token: Optional[str]) -> bool:
        if not self.config.verification_enabled:
            return True
        expected = webhook_token(self.config.secret, provider)
        return hmac.compare_digest(token or "", expected)

    def handle_callback(self, provider: str, raw_body: bytes, token: Optional[str] = None) -> WebhookAck:
        """
        Handle one provider callback.

        Raises:
            UnknownProviderError: Provider name not registered (404)
            WebhookAuthError: Token invalid while a secret is configured (401)
            MalformedWebhookError: Body not JSON, without a job id, or with
                fields of the wrong shape (400)
        """
        if not self.registry.has(provider):
            raise UnknownProviderError(provider)

        if not self.verify(provider, token):
            logger.warning(f"[{provider.upper()}] Webhook rejected: invalid token")
            raise WebhookAuthError(provider)

        try:
            payload = json.loads(raw_body or b"")
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise MalformedWebhookError(provider, "body is not JSON")
        if not isinstance(payload, dict):
            raise MalformedWebhookError(provider, "body is not a JSON object")

        adapter = self.registry.get(provider)
        try:
            job_id = adapter.extract_job_id(payload)
        except ValueError as e:
            raise MalformedWebhookError(provider, str(e))

        ref = ProviderJobRef(provider=provider, job_id=job_id)
        ack = WebhookAck(provider=provider, job_id=job_id, matched=False)

        task = self.store.find_by_provider_ref(ref)
        item = None if task is not None else self.batches.find_item_by_provider_ref(ref)
        if task is None and item is None:
            logger.info(f"Webhook for unknown job ignored: provider_job={ref}")
            return ack

        # Batch items only exist under thumbnail-batch tasks
        task_type = task.task_type if task is not None else TaskType.THUMBNAIL_BATCH
        status = self._parse(adapter, payload, task_type)
        status.job_id = job_id
        ack.matched = True
        ack.state = status.state.value

        try:
            if task is not None:
                ack.applied = self.applier.apply_task(task, status)
                logger.info(
                    f"Webhook {status.state.value}: {task.log_context()} "
                    f"applied={ack.applied}"
                )
            else:
                ack.applied = self.applier.apply_item(item, status)
                logger.info(
                    f"Webhook {status.state.value}: batch={item.batch_id} item={item.item_index} "
                    f"provider_job={ref} applied={ack.applied}"
                )
        except Exception as e:
            logger.error(f"Webhook processing failed: provider_job={ref}: {e}", exc_info=True)
            ack.error = "processing error"

        return ack

    @staticmethod
    def _parse(adapter, payload: dict, task_type: TaskType) -> StatusResult:
        try:
            return adapter.parse_callback(payload, task_type)
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            logger.warning(f"{adapter.tag} Malformed callback for {task_type.value}: {e}")
            raise MalformedWebhookError(adapter.name, f"unexpected payload shape: {e}")
