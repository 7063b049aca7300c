from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_EXECUTION_ROOT,
    DEFAULT_MAX_POLL_FAILURES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL,
)
from .contracts import FailureMode


class LocalBackendConfig(BaseModel):
    """Configuration for the local process backend."""

    root: str = DEFAULT_EXECUTION_ROOT


class SgeBackendConfig(BaseModel):
    """Configuration for the Sun Grid Engine backend."""

    root: str = DEFAULT_EXECUTION_ROOT
    queue: Optional[str] = None


class BackendConfig(BaseModel):
    """Backend selection and per-backend settings."""

    default: Literal["local", "sge", "inmemory"] = "local"
    local: LocalBackendConfig = LocalBackendConfig()
    sge: SgeBackendConfig = SgeBackendConfig()


class EngineConfig(BaseModel):
    """Scheduling, polling and retry settings."""

    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    max_poll_failures: int = Field(default=DEFAULT_MAX_POLL_FAILURES, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    failure_mode: FailureMode = FailureMode.FAIL_FAST
    retention_seconds: Optional[float] = None


class LoomworkConfig(BaseModel):
    """Top-level configuration model."""

    backend: BackendConfig = BackendConfig()
    engine: EngineConfig = EngineConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> LoomworkConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LOOMWORK_CONFIG env
            variable or 'loomwork.yaml' in the current directory.
    """

    config_path = path or os.getenv("LOOMWORK_CONFIG", DEFAULT_CONFIG_FILE)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LoomworkConfig(**data)
    else:
        config = LoomworkConfig()

    env_backend = os.getenv("LOOMWORK_BACKEND")
    if env_backend:
        config.backend.default = env_backend.lower()
    env_db_url = os.getenv("LOOMWORK_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
