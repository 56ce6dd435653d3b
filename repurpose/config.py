"""
Application Configuration - Environment Variable Management.
Loads and validates configuration from .env file.

The configuration is read once at process start by load_config() and passed
into every component; nothing below this module reads os.environ at call time.
"""
import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
ENV_FILE = PROJECT_ROOT / ".env"


def _is_configured(key: Optional[str]) -> bool:
    return bool(key and not key.startswith("PASTE_"))


@dataclass
class ProvidersConfig:
    """External provider credentials, endpoints and throughput ceilings."""
    vizard_api_key: Optional[str] = None
    vizard_base_url: str = "https://elb-api.vizard.ai/hvizard-server-front/open-api/v1"
    fal_api_key: Optional[str] = None
    fal_queue_url: str = "https://queue.fal.run"
    kie_api_key: Optional[str] = None
    kie_base_url: str = "https://api.kie.ai"

    # Creations per minute, per user
    vizard_rate_per_minute: int = 5
    fal_rate_per_minute: int = 10
    kie_rate_per_minute: int = 20

    timeout_seconds: float = 60.0
    retry_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0

    @property
    def has_vizard(self) -> bool:
        return _is_configured(self.vizard_api_key)

    @property
    def has_fal(self) -> bool:
        return _is_configured(self.fal_api_key)

    @property
    def has_kie(self) -> bool:
        return _is_configured(self.kie_api_key)

    def rate_per_minute(self, provider: str) -> int:
        """Creation ceiling for a provider name."""
        return {
            "vizard": self.vizard_rate_per_minute,
            "fal": self.fal_rate_per_minute,
            "kie": self.kie_rate_per_minute,
        }.get(provider, 10)


@dataclass
class WebhookConfig:
    """Inbound webhook configuration."""
    public_base_url: Optional[str] = None
    secret: Optional[str] = None

    @property
    def callbacks_enabled(self) -> bool:
        return bool(self.public_base_url)

    @property
    def verification_enabled(self) -> bool:
        return bool(self.secret)


@dataclass
class OrchestrationConfig:
    """
    Product-tuned orchestration constants.
    None of these are protocol requirements.
    """
    accepted_percent: int = 5
    submitted_percent: int = 15
    max_poll_attempts: int = 360
    poll_interval_seconds: float = 10.0
    poll_backoff_multiplier: float = 2.0
    poll_max_interval_seconds: float = 300.0
    min_poll_gap_seconds: float = 5.0
    webhook_grace_seconds: float = 120.0
    claim_ttl_seconds: float = 300.0
    max_batch_items: int = 10
    rate_limit_max_wait_seconds: float = 120.0


@dataclass
class AppConfig:
    """Main Application Configuration."""
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    database_path: str = "data/repurpose.db"
    task_queue: str = "inline"
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    debug: bool = False

    def __post_init__(self):
        if self.task_queue not in ("celery", "inline"):
            raise ValueError(f"TASK_QUEUE must be 'celery' or 'inline', got {self.task_queue!r}")
        checkpoints = self.orchestration
        if not 0 < checkpoints.accepted_percent <= checkpoints.submitted_percent < 100:
            raise ValueError("Progress checkpoints must satisfy 0 < accepted <= submitted < 100")

    @property
    def uses_celery(self) -> bool:
        return self.task_queue == "celery"

    def validate(self) -> dict:
        """Validate configuration and return status."""
        return {
            "providers": {
                "vizard_configured": self.providers.has_vizard,
                "fal_configured": self.providers.has_fal,
                "kie_configured": self.providers.has_kie,
            },
            "webhooks": {
                "callbacks_enabled": self.webhooks.callbacks_enabled,
                "verification_enabled": self.webhooks.verification_enabled,
            },
            "database": {
                "path": self.database_path,
            },
            "task_queue": self.task_queue,
        }

    def log_status(self):
        """Log configuration status (without exposing keys)."""
        status = self.validate()

        logger.info("=" * 50)
        logger.info("Configuration Status:")
        logger.info(f"  Vizard (clips): {'OK' if status['providers']['vizard_configured'] else 'NOT CONFIGURED'}")
        logger.info(f"  fal.ai (personas, transcription): {'OK' if status['providers']['fal_configured'] else 'NOT CONFIGURED'}")
        logger.info(f"  Kie (thumbnails): {'OK' if status['providers']['kie_configured'] else 'NOT CONFIGURED'}")
        logger.info(f"  Webhook callbacks: {'ON' if status['webhooks']['callbacks_enabled'] else 'OFF (polling only)'}")
        logger.info(f"  Database: {self.database_path}")
        logger.info(f"  Task queue: {self.task_queue}")
        logger.info("=" * 50)

        if not status["webhooks"]["verification_enabled"]:
            logger.warning("WEBHOOK_SECRET not set - inbound webhooks are not verified")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def load_config(env_file: Optional[Path] = ENV_FILE) -> AppConfig:
    """Load configuration from environment variables (and .env if present)."""
    if env_file is not None and env_file.exists():
        load_dotenv(env_file)
        logger.info(f"Loaded environment from {env_file}")

    providers = ProvidersConfig(
        vizard_api_key=os.getenv("VIZARD_API_KEY"),
        vizard_base_url=os.getenv("VIZARD_BASE_URL", ProvidersConfig.vizard_base_url),
        fal_api_key=os.getenv("FAL_API_KEY"),
        fal_queue_url=os.getenv("FAL_QUEUE_URL", ProvidersConfig.fal_queue_url),
        kie_api_key=os.getenv("KIE_API_KEY"),
        kie_base_url=os.getenv("KIE_BASE_URL", ProvidersConfig.kie_base_url),
        vizard_rate_per_minute=_env_int("VIZARD_RATE_PER_MINUTE", 5),
        fal_rate_per_minute=_env_int("FAL_RATE_PER_MINUTE", 10),
        kie_rate_per_minute=_env_int("KIE_RATE_PER_MINUTE", 20),
        timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 60.0),
        retry_attempts=_env_int("PROVIDER_RETRY_ATTEMPTS", 3),
        retry_initial_delay=_env_float("PROVIDER_RETRY_INITIAL_DELAY", 1.0),
        retry_max_delay=_env_float("PROVIDER_RETRY_MAX_DELAY", 30.0),
    )

    webhooks = WebhookConfig(
        public_base_url=os.getenv("PUBLIC_BASE_URL"),
        secret=os.getenv("WEBHOOK_SECRET"),
    )

    orchestration = OrchestrationConfig(
        accepted_percent=_env_int("ACCEPTED_PERCENT", 5),
        submitted_percent=_env_int("SUBMITTED_PERCENT", 15),
        max_poll_attempts=_env_int("MAX_POLL_ATTEMPTS", 360),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 10.0),
        poll_backoff_multiplier=_env_float("POLL_BACKOFF_MULTIPLIER", 2.0),
        poll_max_interval_seconds=_env_float("POLL_MAX_INTERVAL_SECONDS", 300.0),
        min_poll_gap_seconds=_env_float("MIN_POLL_GAP_SECONDS", 5.0),
        webhook_grace_seconds=_env_float("WEBHOOK_GRACE_SECONDS", 120.0),
        claim_ttl_seconds=_env_float("CLAIM_TTL_SECONDS", 300.0),
        max_batch_items=_env_int("MAX_BATCH_ITEMS", 10),
        rate_limit_max_wait_seconds=_env_float("RATE_LIMIT_MAX_WAIT_SECONDS", 120.0),
    )

    return AppConfig(
        providers=providers,
        webhooks=webhooks,
        orchestration=orchestration,
        database_path=os.getenv("DATABASE_PATH", "data/repurpose.db"),
        task_queue=os.getenv("TASK_QUEUE", "inline").lower(),
        celery_broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        celery_result_backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1"),
        debug=os.getenv("DEBUG", "false").lower() == "true",
    )


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get or create the process-wide configuration (composition root only)."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset configuration singleton (for testing)."""
    global _config
    _config = None
