"""Settings model — pydantic-settings with env var support."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

ENV_PREFIX = "CURATOR_"


class Settings(BaseSettings):
    """Server settings.

    Use ``ConfigLoader.load_settings()`` to build with YAML + env var layering.
    Direct construction (e.g. in tests) skips YAML loading.
    """

    database_url: str = "sqlite+aiosqlite:///curator.db"
    log_level: str = "INFO"

    # Transport: "demo" simulates the mock fleet, "http" talks to host agents.
    transport: Literal["demo", "http"] = "http"
    seed_demo_hosts: bool = False
    transport_timeout_seconds: float = Field(default=5.0, gt=0)

    # Polling, keyed by Host.host_class; unknown classes use the base interval.
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    poll_intervals: dict[str, float] = Field(default_factory=dict)
    poll_max_interval_seconds: float = Field(default=300.0, gt=0)
    failure_threshold: int = Field(default=3, ge=1)

    # Action dispatch
    action_max_attempts: int = Field(default=3, ge=1)
    action_backoff_seconds: float = Field(default=1.0, ge=0)

    model_config = {"env_prefix": ENV_PREFIX}
