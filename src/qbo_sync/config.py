"""
Engine configuration.

Settings come from `~/.qbo-sync/config.json`, overridden by `QBO_SYNC_*`
environment variables (e.g. `QBO_SYNC_BATCH_SIZE=50`).
"""

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from qbo_sync.errors import ConfigurationError
from qbo_sync.retry import RetryConfig

ENV_PREFIX = "QBO_SYNC_"


class SyncSettings(BaseModel):
    """Every tunable of the engine, with production defaults."""

    environment: Literal["sandbox", "production"] = "production"
    state_file: str | None = None
    request_timeout: float = Field(30.0, gt=0)

    # QBO allows 500 calls/minute per realm; stay under it
    rate_limit_max_requests: int = Field(450, gt=0)
    rate_limit_window_seconds: float = Field(60.0, gt=0)
    rate_limit_margin_seconds: float = Field(0.1, ge=0)

    retry_max_retries: int = Field(3, ge=0)
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(10.0, ge=0)
    retry_jitter: bool = True

    orchestrator_retry_attempts: int = Field(3, ge=1, le=10)
    batch_size: int = Field(100, ge=1, le=1000)
    execution_time_limit: float | None = Field(140.0, gt=0)

    queue_max_concurrent: int = Field(5, ge=1)
    queue_max_jobs: int = Field(20, ge=1)
    job_max_retries: int = Field(3, ge=0)
    queue_poll_interval: float = Field(5.0, gt=0)
    stale_session_seconds: float = Field(120.0, gt=0)

    webhook_verifier_token: str | None = None

    log_level: str = "INFO"
    json_logs: bool = False
    # Persist one qbo_api_log row per QuickBooks request
    api_log_enabled: bool = True

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retry_max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )


def get_config_path() -> Path:
    """Get the configuration file path."""
    return Path.home() / ".qbo-sync" / "config.json"


def _coerce(value: str) -> Any:
    # Convert string booleans; pydantic handles numbers
    if value.lower() in ("true", "1", "yes"):
        return True
    if value.lower() in ("false", "0", "no"):
        return False
    return value


def load_settings(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SyncSettings:
    """
    Load settings from file, with environment variable overrides.

    Priority:
    1. Environment variables (QBO_SYNC_<FIELD>)
    2. Config file values
    3. Defaults

    Raises:
        ConfigurationError: unreadable file or invalid values
    """
    environ = os.environ if environ is None else environ
    path = Path(config_path) if config_path else get_config_path()
    values: dict[str, Any] = {}

    if path.exists():
        try:
            with open(path) as f:
                values = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    for name, field in SyncSettings.model_fields.items():
        env_value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if env_value is None:
            continue
        # Numeric fields keep "1"/"0" as numbers
        if field.annotation is bool:
            values[name] = _coerce(env_value)
        else:
            values[name] = env_value

    try:
        return SyncSettings.model_validate(values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
