"""
Tests for configuration management.
"""
import pytest

from repurpose.config import (
    AppConfig,
    OrchestrationConfig,
    ProvidersConfig,
    WebhookConfig,
    get_config,
    load_config,
    reset_config,
)


class TestProvidersConfig:
    """Tests for provider credential detection."""

    def test_placeholder_keys_are_not_configured(self):
        config = ProvidersConfig(vizard_api_key="PASTE_YOUR_KEY_HERE", fal_api_key="", kie_api_key=None)

        assert not config.has_vizard
        assert not config.has_fal
        assert not config.has_kie

    def test_real_keys_are_configured(self):
        config = ProvidersConfig(vizard_api_key="vz-123", fal_api_key="fal-123", kie_api_key="kie-123")

        assert config.has_vizard and config.has_fal and config.has_kie

    def test_rate_per_minute_lookup(self):
        config = ProvidersConfig(vizard_rate_per_minute=3, kie_rate_per_minute=7)

        assert config.rate_per_minute("vizard") == 3
        assert config.rate_per_minute("kie") == 7
        assert config.rate_per_minute("unknown") == 10


class TestWebhookConfig:

    def test_callbacks_follow_public_base_url(self):
        assert not WebhookConfig().callbacks_enabled
        assert WebhookConfig(public_base_url="https://api.example.com").callbacks_enabled

    def test_verification_follows_secret(self):
        assert not WebhookConfig(public_base_url="https://api.example.com").verification_enabled
        assert WebhookConfig(secret="s3cret").verification_enabled


class TestAppConfig:
    """Tests for AppConfig."""

    def test_defaults(self):
        config = AppConfig()

        assert config.task_queue == "inline"
        assert not config.uses_celery
        assert config.orchestration.accepted_percent == 5
        assert config.orchestration.submitted_percent == 15

    def test_invalid_task_queue_rejected(self):
        with pytest.raises(ValueError, match="TASK_QUEUE"):
            AppConfig(task_queue="rq")

    def test_checkpoints_must_be_ordered(self):
        with pytest.raises(ValueError, match="checkpoints"):
            AppConfig(orchestration=OrchestrationConfig(accepted_percent=20, submitted_percent=10))

        with pytest.raises(ValueError):
            AppConfig(orchestration=OrchestrationConfig(accepted_percent=0))

    def test_validate_does_not_expose_keys(self):
        config = AppConfig(providers=ProvidersConfig(vizard_api_key="vz-secret"))
        report = config.validate()

        assert report["providers"]["vizard_configured"] is True
        assert report["providers"]["fal_configured"] is False
        assert "vz-secret" not in str(report)

    def test_log_status_warns_without_webhook_secret(self, caplog):
        AppConfig().log_status()

        assert "WEBHOOK_SECRET not set" in caplog.text


class TestLoadConfig:
    """Tests for environment loading."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("VIZARD_API_KEY", "vz-env")
        monkeypatch.setenv("PUBLIC_BASE_URL", "https://hooks.example.com")
        monkeypatch.setenv("WEBHOOK_SECRET", "env-secret")
        monkeypatch.setenv("TASK_QUEUE", "CELERY")
        monkeypatch.setenv("MAX_POLL_ATTEMPTS", "12")
        monkeypatch.setenv("MIN_POLL_GAP_SECONDS", "2.5")
        monkeypatch.setenv("DATABASE_PATH", "/tmp/env.db")

        config = load_config(env_file=None)

        assert config.providers.vizard_api_key == "vz-env"
        assert config.webhooks.callbacks_enabled
        assert config.webhooks.secret == "env-secret"
        assert config.uses_celery
        assert config.orchestration.max_poll_attempts == 12
        assert config.orchestration.min_poll_gap_seconds == 2.5
        assert config.database_path == "/tmp/env.db"

    def test_loads_env_file(self, temp_dir, monkeypatch):
        monkeypatch.delenv("KIE_API_KEY", raising=False)
        env_file = temp_dir / ".env"
        env_file.write_text("KIE_API_KEY=kie-from-file\n")

        config = load_config(env_file=env_file)

        assert config.providers.kie_api_key == "kie-from-file"
        monkeypatch.delenv("KIE_API_KEY", raising=False)

    def test_get_config_is_cached_until_reset(self, temp_dir, monkeypatch):
        monkeypatch.setenv("DATABASE_PATH", str(temp_dir / "first.db"))
        reset_config()
        first = get_config()

        monkeypatch.setenv("DATABASE_PATH", str(temp_dir / "second.db"))
        assert get_config() is first

        reset_config()
        assert get_config().database_path == str(temp_dir / "second.db")
        reset_config()

    def test_orchestrator_singleton(self, temp_dir, monkeypatch):
        from repurpose.orchestration.factory import get_orchestrator, reset_orchestrator

        monkeypatch.setenv("DATABASE_PATH", str(temp_dir / "singleton.db"))
        reset_config()
        reset_orchestrator()
        try:
            orchestrator = get_orchestrator()
            assert get_orchestrator() is orchestrator
            assert orchestrator.config.database_path == str(temp_dir / "singleton.db")
        finally:
            reset_orchestrator()
            reset_config()


class TestCeleryConfig:
    """Worker routing and the reconcile beat schedule."""

    def test_routes_and_beat_schedule(self):
        from repurpose.celery_app import celery_app

        routes = celery_app.conf.task_routes
        assert routes["orchestration.submit_task"]["queue"] == "submission"
        assert routes["orchestration.reconcile_task"]["queue"] == "polling"

        beat = celery_app.conf.beat_schedule["reconcile-stale-tasks"]
        assert beat["task"] == "orchestration.reconcile_stale_tasks"
        assert celery_app.conf.task_acks_late is True
