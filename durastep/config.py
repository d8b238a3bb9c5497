from __future__ import annotations

import os
from typing import Optional, Literal

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CALL_CONCURRENCY,
    DEFAULT_CALL_RETRIES,
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_CONTINUATION_TOPIC,
    DEFAULT_LEASE_RETRY_DELAY,
    DEFAULT_LEASE_TTL,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_WORKFLOW_RETRIES,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = DEFAULT_CONTINUATION_TOPIC
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    redis: RedisConfig = Field(default_factory=RedisConfig)


class SigningConfig(BaseModel):
    """Keys used to sign and verify deliveries."""

    current_key: Optional[str] = None
    next_key: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.current_key or self.next_key)


class CallConfig(BaseModel):
    """Defaults for outbound call steps."""

    retries: int = Field(default=DEFAULT_CALL_RETRIES, ge=0)
    timeout: float = DEFAULT_CALL_TIMEOUT
    max_concurrency: int = Field(default=DEFAULT_CALL_CONCURRENCY, ge=1)


class DurastepConfig(BaseModel):
    """Top-level configuration model."""

    base_url: Optional[str] = None
    retries: int = Field(default=DEFAULT_WORKFLOW_RETRIES, ge=0)
    lease_ttl: float = DEFAULT_LEASE_TTL
    lease_retry_delay: float = DEFAULT_LEASE_RETRY_DELAY
    database_url: Optional[str] = None
    transport: TransportConfig = Field(default_factory=TransportConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    call: CallConfig = Field(default_factory=CallConfig)


def load_config(path: Optional[str] = None) -> DurastepConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DURASTEP_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DURASTEP_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DurastepConfig(**data)
    else:
        config = DurastepConfig()

    env_db_url = os.getenv("DURASTEP_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_base_url = os.getenv("DURASTEP_BASE_URL")
    if env_base_url:
        config.base_url = env_base_url
    current_key = os.getenv("DURASTEP_CURRENT_SIGNING_KEY")
    if current_key:
        config.signing.current_key = current_key
    next_key = os.getenv("DURASTEP_NEXT_SIGNING_KEY")
    if next_key:
        config.signing.next_key = next_key
    return config
