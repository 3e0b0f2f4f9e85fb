from __future__ import annotations

import os
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CLAIM_LEASE_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_BATCH_SIZE,
    DEFAULT_POLL_CONCURRENCY,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_TRIGGER_LOOKBACK_SECONDS,
)


class EngineConfig(BaseModel):
    """Retry policy for failing steps."""

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = 30.0
    retry_backoff_base: float = 2.0
    retry_jitter: float = 0.5


class PollerConfig(BaseModel):
    """Cadence and fan-out of the polling loop."""

    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    concurrency: int = DEFAULT_POLL_CONCURRENCY
    batch_size: int = DEFAULT_POLL_BATCH_SIZE
    trigger_lookback_seconds: int = DEFAULT_TRIGGER_LOOKBACK_SECONDS
    claim_lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS


class TriggerConfig(BaseModel):
    """Binds a trigger type to the workflow it starts."""

    workflow_id: str
    enabled: bool = True


class PaceflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    poller: PollerConfig = PollerConfig()
    database_url: Optional[str] = None
    inbox_url: Optional[str] = None
    rules_path: Optional[str] = None
    triggers: Dict[str, TriggerConfig] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> PaceflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PACEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PACEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PaceflowConfig(**data)
    else:
        config = PaceflowConfig()

    env_db_url = os.getenv("PACEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_inbox_url = os.getenv("PACEFLOW_INBOX_URL")
    if env_inbox_url:
        config.inbox_url = env_inbox_url
    env_rules_path = os.getenv("PACEFLOW_RULES_PATH")
    if env_rules_path:
        config.rules_path = env_rules_path
    return config
