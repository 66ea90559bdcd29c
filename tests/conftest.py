"""Shared test fixtures for platform verification."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from platform_verify.engine.models import (
    AuthRequirement,
    GatewayCheck,
    Probe,
    RetryPolicy,
    ServiceCheck,
)

Handler = Callable[[httpx.Request], Any]


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and only yields."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakePlatform:
    """Simulated platform behind ``httpx.MockTransport``.

    Routes are keyed by ``(METHOD, url)``.  A route holds either a callable
    handler or a list of responses served in order (the last one repeats).
    Unrouted requests fail like a refused connection.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Handler | list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, method: str, url: str, *responses: httpx.Response | Handler) -> None:
        if len(responses) == 1 and callable(responses[0]):
            self.routes[(method.upper(), url)] = responses[0]
        else:
            self.routes[(method.upper(), url)] = list(responses)

    def ok(self, url: str, json: Any = None, status: int = 200) -> None:
        self.route("GET", url, httpx.Response(status, json=json if json is not None else {}))

    def calls(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        target = self.routes.get((request.method, str(request.url)))
        if target is None:
            raise httpx.ConnectError("connection refused", request=request)
        if callable(target):
            response = target(request)
            if asyncio.iscoroutine(response):
                response = await response
            return response
        if len(target) > 1:
            return target.pop(0)
        return target[0]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_probe(probe_id: str, target: str = "/health", **kwargs: Any) -> Probe:
    kwargs.setdefault("retry", RetryPolicy(max_attempts=3, backoff_base=0.5, backoff_cap=5.0))
    return Probe(probe_id=probe_id, target=target, **kwargs)


def make_check(
    name: str,
    *probes: Probe,
    depends_on: tuple[str, ...] = (),
    base_url: str | None = None,
    optional: bool = False,
) -> ServiceCheck:
    return ServiceCheck(
        service_name=name,
        probes=probes or (make_probe(f"{name}-health"),),
        depends_on=frozenset(depends_on),
        base_url=base_url or f"http://{name}:8080",
        optional=optional,
    )


def make_gateway(
    name: str,
    *probes: Probe,
    routes_to: tuple[str, ...] = (),
    optional: bool = False,
) -> GatewayCheck:
    return GatewayCheck(
        service_name=name,
        probes=probes
        or (make_probe(f"{name}-route", f"/{name}/v1/health", auth=AuthRequirement.ANON_KEY),),
        routes_to=frozenset(routes_to),
        optional=optional,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer environment variables out of settings."""
    for name in ("PLATFORM_VERIFY_ARTIFACT_DIR", "PLATFORM_VERIFY_RUN_DEADLINE", "ANON_KEY", "SERVICE_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()
