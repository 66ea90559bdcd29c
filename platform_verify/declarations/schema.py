"""Pydantic v2 schema for the check declarations file.

Example::

    gateway_url: http://gateway:8000
    defaults:
      timeout: 5
      retry: {max_attempts: 3, backoff_base: 0.5, backoff_cap: 5}
    services:
      - name: db
        probes:
          - {id: db-port, method: TCP, target: "db:5432"}
      - name: auth
        base_url: http://auth:9999
        depends_on: [db]
        probes:
          - id: auth-health
            target: /health
            expect: {status: 200, body: {json_keys: [version]}}
    gateway:
      - name: gateway-auth
        routes_to: [auth]
        probes:
          - {id: gateway-auth-health, target: /auth/v1/health, auth: anon_key}
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from platform_verify.engine.models import AuthRequirement

__all__ = [
    "BodyExpectation",
    "CheckSpec",
    "DeclarationsDocument",
    "Defaults",
    "Expectation",
    "GatewayCheckSpec",
    "ProbeSpec",
    "RetrySpec",
]


# ── Probe fields ─────────────────────────────────────


class RetrySpec(BaseModel):
    """Retry policy as written in YAML."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, description="Attempts including the first")
    backoff_base: float = Field(default=0.5, ge=0, description="Seconds before attempt 2")
    backoff_cap: float = Field(default=5.0, ge=0, description="Upper bound per sleep")


class BodyExpectation(BaseModel):
    """Response body predicate; every given condition must hold."""

    model_config = ConfigDict(extra="forbid")

    contains: str | None = Field(default=None, description="Substring the body must contain")
    pattern: str | None = Field(default=None, description="Regex searched in the body")
    json_keys: list[str] = Field(
        default_factory=list, description="Dotted paths that must exist in the JSON body"
    )
    json_equals: dict[str, Any] = Field(
        default_factory=dict, description="Dotted path -> expected JSON value"
    )

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid regular expression: {exc}") from exc
        return value


class Expectation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: list[int] = Field(default_factory=lambda: [200], description="Accepted status codes")
    body: BodyExpectation | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _single_status(cls, value: Any) -> Any:
        if isinstance(value, int):
            return [value]
        return value


class ProbeSpec(BaseModel):
    """One probe entry under a check."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(min_length=1, description="Unique probe identifier")
    target: str = Field(min_length=1, description="URL, path, or host:port for TCP")
    method: str = Field(default="GET", description="HTTP verb or TCP")
    auth: AuthRequirement = AuthRequirement.NONE
    expect: Expectation = Field(default_factory=Expectation)
    timeout: float | None = Field(default=None, gt=0, description="Overrides defaults.timeout")
    retry: RetrySpec | None = Field(default=None, description="Overrides defaults.retry")
    optional: bool = False
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = Field(default=None, description="JSON request body")
    creates_artifact: bool = Field(
        default=False, description="Response Location names a resource to clean up"
    )

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()


# ── Checks ───────────────────────────────────────────


class CheckSpec(BaseModel):
    """A service check: probes sent directly to one backend service."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    probes: list[ProbeSpec] = Field(min_length=1)
    depends_on: list[str] = Field(default_factory=list)
    base_url: str | None = None
    optional: bool = False


class GatewayCheckSpec(CheckSpec):
    """A gateway check: probes sent through the shared ingress."""

    routes_to: list[str] = Field(
        default_factory=list, description="Services reached through this route"
    )


# ── Document ─────────────────────────────────────────


class Defaults(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(default=5.0, gt=0)
    retry: RetrySpec = Field(default_factory=RetrySpec)


class DeclarationsDocument(BaseModel):
    """Top-level declarations file."""

    model_config = ConfigDict(extra="forbid")

    gateway_url: str | None = Field(default=None, description="Shared ingress address")
    defaults: Defaults = Field(default_factory=Defaults)
    services: list[CheckSpec] = Field(default_factory=list)
    gateway: list[GatewayCheckSpec] = Field(default_factory=list)

    @property
    def check_count(self) -> int:
        return len(self.services) + len(self.gateway)
