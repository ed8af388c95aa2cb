"""
Tests for settings loading.
"""

import json

import pytest

from qbo_sync.config import SyncSettings, load_settings
from qbo_sync.errors import ConfigurationError
from qbo_sync.retry import RetryConfig


class TestLoadSettings:

    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path / "missing.json", environ={})

        assert settings.environment == "production"
        assert settings.rate_limit_max_requests == 450
        assert settings.batch_size == 100
        assert settings.execution_time_limit == 140.0
        assert settings.queue_max_concurrent == 5

    def test_file_values(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"environment": "sandbox", "batch_size": 250}))

        settings = load_settings(path, environ={})

        assert settings.environment == "sandbox"
        assert settings.batch_size == 250

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"batch_size": 250, "json_logs": False}))

        settings = load_settings(path, environ={
            "QBO_SYNC_BATCH_SIZE": "50",
            "QBO_SYNC_JSON_LOGS": "yes",
            "QBO_SYNC_WEBHOOK_VERIFIER_TOKEN": "secret",
            "UNRELATED": "x",
        })

        assert settings.batch_size == 50
        assert settings.json_logs is True
        assert settings.webhook_verifier_token == "secret"

    def test_numeric_one_stays_numeric(self, tmp_path):
        settings = load_settings(tmp_path / "none.json", environ={"QBO_SYNC_JOB_MAX_RETRIES": "1"})
        assert settings.job_max_retries == 1

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")

        with pytest.raises(ConfigurationError):
            load_settings(path, environ={})

    @pytest.mark.parametrize("env", [
        {"QBO_SYNC_BATCH_SIZE": "0"},
        {"QBO_SYNC_BATCH_SIZE": "lots"},
        {"QBO_SYNC_ENVIRONMENT": "staging"},
        {"QBO_SYNC_RATE_LIMIT_MAX_REQUESTS": "-1"},
    ])
    def test_invalid_values(self, tmp_path, env):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "none.json", environ=env)


def test_retry_config_from_settings():
    settings = SyncSettings(retry_max_retries=5, retry_base_delay=0.5, retry_jitter=False)

    assert settings.retry_config == RetryConfig(
        max_retries=5, base_delay=0.5, max_delay=10.0, jitter=False
    )
