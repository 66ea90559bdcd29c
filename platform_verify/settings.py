"""Environment-driven engine settings.

Every knob can be set as ``PLATFORM_VERIFY_<NAME>`` in the environment or a
``.env`` file; CLI flags override them per invocation.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

__all__ = ["VerifySettings"]


class VerifySettings(BaseSettings):
    """Engine configuration, separate from the check declarations."""

    checks_file: Path = Field(
        default=Path("config/platform-checks.yaml"),
        description="YAML file declaring service and gateway checks",
    )
    gateway_url: str | None = Field(
        default=None, description="Overrides gateway_url from the declarations"
    )

    max_in_flight: int = Field(default=8, ge=1, description="Concurrent probe attempts")
    run_deadline: float | None = Field(
        default=300.0, gt=0, description="Seconds before outstanding probes time out"
    )

    credentials_dir: Path | None = Field(
        default=None, description="Mounted secret directory, one file per key"
    )
    credential_env_prefix: str = Field(
        default="", description="Prefix for credential environment variables"
    )
    resolve_attempts: int = Field(default=5, ge=1)
    resolve_backoff_base: float = Field(default=1.0, ge=0)
    resolve_backoff_cap: float = Field(default=10.0, ge=0)
    api_key_header: str = Field(default="apikey", description="Header carrying the raw key")

    artifact_dir: Path = Field(default=Path(".platform-verify/artifacts"))
    artifact_ttl: float = Field(default=3600.0, ge=0, description="Seconds artifacts live")
    grace_window: float = Field(default=30.0, ge=0)
    retain_on_failure: bool = False

    log_level: str = "INFO"

    model_config = {"env_prefix": "PLATFORM_VERIFY_", "env_file": ".env", "extra": "ignore"}
