"""Single-attempt probe execution and failure classification.

``ProbeExecutor.attempt`` performs exactly one attempt of a probe and either
returns a ``ProbeResponse`` (the expectation matched) or raises one of the
probe errors, each mapping to exactly one outcome:

- ``Unreachable``: connection refused, DNS failure, broken transport
- ``ProbeTimedOut``: no response within the probe timeout
- ``AuthError``: HTTP 401/403 when that status was not the expected one
- ``AssertionFailed``: response received but status or body did not match

Retries, backoff and credential refresh live in the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

import httpx

from platform_verify.engine.credentials import Credential
from platform_verify.engine.exceptions import AssertionFailed, AuthError, ProbeTimedOut, Unreachable
from platform_verify.engine.models import CheckKind, Probe, ServiceCheck

log = logging.getLogger(__name__)

__all__ = ["AUTH_STATUSES", "ProbeExecutor", "ProbeResponse", "split_host_port"]

AUTH_STATUSES: frozenset[int] = frozenset({401, 403})
BODY_EXCERPT_CHARS = 2048


@dataclass(slots=True, frozen=True)
class ProbeResponse:
    """What a matching attempt observed."""

    status_code: int | None
    latency: float
    body_excerpt: str = ""
    location: str | None = None


def split_host_port(target: str) -> tuple[str, int]:
    """Parse ``host:port`` (``tcp://`` prefix allowed) for TCP probes."""
    raw = target.removeprefix("tcp://")
    host, sep, port = raw.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"TCP target must be host:port, got {target!r}")
    return host.strip("[]"), int(port)


class ProbeExecutor:
    """Runs one attempt of a probe against its target.

    Parameters
    ----------
    client : httpx.AsyncClient
        Shared client for the run; HTTP probes go through it.
    gateway_url : str | None
        Ingress address used as the base for gateway check probes.
    api_key_header : str
        Header carrying the raw key alongside ``Authorization: Bearer``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        gateway_url: str | None = None,
        api_key_header: str = "apikey",
        open_connection: Callable[..., Any] = asyncio.open_connection,
    ) -> None:
        self.client = client
        self.gateway_url = gateway_url
        self.api_key_header = api_key_header
        self._open_connection = open_connection

    def resolve_url(self, probe: Probe, check: ServiceCheck) -> str:
        if probe.target.startswith(("http://", "https://")):
            return probe.target
        base = check.base_url
        if check.kind is CheckKind.GATEWAY:
            base = check.base_url or self.gateway_url
        if not base:
            raise ValueError(
                f"probe {probe.probe_id!r} has relative target {probe.target!r} "
                f"but check {check.service_name!r} has no base URL"
            )
        return urljoin(base.rstrip("/") + "/", probe.target.lstrip("/"))

    def auth_headers(self, credential: Credential | None) -> dict[str, str]:
        if credential is None:
            return {}
        key = credential.reveal()
        return {self.api_key_header: key, "Authorization": f"Bearer {key}"}

    async def attempt(
        self,
        probe: Probe,
        check: ServiceCheck,
        credential: Credential | None = None,
    ) -> ProbeResponse:
        if probe.is_tcp:
            return await self._attempt_tcp(probe)
        return await self._attempt_http(probe, check, credential)

    async def _attempt_http(
        self,
        probe: Probe,
        check: ServiceCheck,
        credential: Credential | None,
    ) -> ProbeResponse:
        url = self.resolve_url(probe, check)
        headers = {**probe.headers, **self.auth_headers(credential)}
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.client.request(
                    probe.method.upper(),
                    url,
                    headers=headers,
                    json=probe.body,
                    timeout=probe.timeout,
                ),
                timeout=probe.timeout,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise ProbeTimedOut(
                probe.probe_id, f"no response from {url} within {probe.timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise Unreachable(
                probe.probe_id, f"{url}: {e.__class__.__name__}: {e}"
            ) from e
        latency = time.monotonic() - started

        status = response.status_code
        body = response.text
        if status not in probe.expected_status:
            if status in AUTH_STATUSES:
                raise AuthError(
                    probe.probe_id,
                    f"{probe.method.upper()} {url} rejected with HTTP {status}",
                    status_code=status,
                )
            raise AssertionFailed(
                probe.probe_id,
                f"expected HTTP {_fmt_statuses(probe.expected_status)}, got {status}",
                status_code=status,
                body_excerpt=body[:BODY_EXCERPT_CHARS],
            )

        if probe.expected_body is not None:
            verdict = probe.expected_body.evaluate(body)
            if not verdict.passed:
                raise AssertionFailed(
                    probe.probe_id,
                    verdict.reason,
                    status_code=status,
                    body_excerpt=body[:BODY_EXCERPT_CHARS],
                )

        location = response.headers.get("location")
        if location:
            location = urljoin(url, location)
        return ProbeResponse(
            status_code=status,
            latency=latency,
            body_excerpt=body[:BODY_EXCERPT_CHARS],
            location=location,
        )

    async def _attempt_tcp(self, probe: Probe) -> ProbeResponse:
        host, port = split_host_port(probe.target)
        started = time.monotonic()
        try:
            _reader, writer = await asyncio.wait_for(
                self._open_connection(host, port), timeout=probe.timeout
            )
        except TimeoutError as e:
            raise ProbeTimedOut(
                probe.probe_id, f"TCP connect to {host}:{port} timed out after {probe.timeout}s"
            ) from e
        except OSError as e:
            raise Unreachable(probe.probe_id, f"TCP connect to {host}:{port} failed: {e}") from e
        latency = time.monotonic() - started
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            log.debug("Ignoring close error on %s:%d", host, port)
        return ProbeResponse(status_code=None, latency=latency)


def _fmt_statuses(statuses: frozenset[int]) -> str:
    return "/".join(str(s) for s in sorted(statuses))
