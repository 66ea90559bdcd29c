"""Run-scoped wiring of the verification engine.

``VerificationRun`` owns every stateful collaborator of one run (HTTP
client, credential resolver, scheduler, artifact lifecycle) and tears them
down on exit, so two runs never share a cache or a connection pool.

Usage::

    async with VerificationRun(declarations.checks, source, settings=settings) as run:
        report = await run.execute()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

import httpx

from platform_verify.engine.credentials import CredentialResolver, CredentialSource
from platform_verify.engine.exceptions import RunCancelled
from platform_verify.engine.lifecycle import (
    ArtifactKind,
    ArtifactLifecycleManager,
    DirectoryArtifactStore,
    HttpDeleter,
)
from platform_verify.engine.models import RunReport, ServiceCheck
from platform_verify.engine.plan import build_plan
from platform_verify.engine.probe import ProbeExecutor
from platform_verify.engine.scheduler import RunScheduler, new_run_id
from platform_verify.settings import VerifySettings

log = logging.getLogger(__name__)

__all__ = ["VerificationRun"]


class VerificationRun:
    """One verification run, from plan build to artifact scheduling.

    The plan is built in the constructor, so ``PlanError`` surfaces before
    any connection is opened or probe is sent.

    Parameters
    ----------
    checks : Sequence[ServiceCheck]
        Declared service and gateway checks.
    source : CredentialSource
        Where credentials are resolved from.
    gateway_url : str | None
        Shared ingress address; overrides ``settings.gateway_url``.
    settings : VerifySettings | None
        Engine knobs; environment defaults when omitted.
    client : httpx.AsyncClient | None
        Injected client (tests); otherwise one is created and closed here.
    lifecycle : ArtifactLifecycleManager | None
        Injected manager; otherwise a directory-backed one is created.
    """

    def __init__(
        self,
        checks: Sequence[ServiceCheck],
        source: CredentialSource,
        *,
        gateway_url: str | None = None,
        settings: VerifySettings | None = None,
        client: httpx.AsyncClient | None = None,
        lifecycle: ArtifactLifecycleManager | None = None,
        run_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or VerifySettings()
        self.plan = build_plan(checks)
        self.source = source
        self.gateway_url = gateway_url or self.settings.gateway_url
        self.run_id = run_id or new_run_id()
        self.report: RunReport | None = None
        self._sleep = sleep
        self._client = client
        self._owns_client = client is None
        self._lifecycle = lifecycle
        self._owns_lifecycle = lifecycle is None
        self._resolver: CredentialResolver | None = None
        self._scheduler: RunScheduler | None = None

    # -- context management ----------------------------------------------

    async def __aenter__(self) -> VerificationRun:
        s = self.settings
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        if self._lifecycle is None:
            self._lifecycle = ArtifactLifecycleManager(
                DirectoryArtifactStore(s.artifact_dir),
                deleters={ArtifactKind.HTTP.value: HttpDeleter(self._client)},
                grace_window=s.grace_window,
                retain_on_failure=s.retain_on_failure,
                evidence_dir=s.artifact_dir,
                sleep=self._sleep,
            )
        self._resolver = CredentialResolver(
            self.source,
            attempts=s.resolve_attempts,
            backoff_base=s.resolve_backoff_base,
            backoff_cap=s.resolve_backoff_cap,
            sleep=self._sleep,
        )
        self._scheduler = RunScheduler(
            ProbeExecutor(
                self._client,
                gateway_url=self.gateway_url,
                api_key_header=s.api_key_header,
            ),
            max_in_flight=s.max_in_flight,
            run_deadline=s.run_deadline,
            lifecycle=self._lifecycle,
            sleep=self._sleep,
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._owns_lifecycle and self._lifecycle is not None:
            await self._lifecycle.shutdown()
        if self._resolver is not None:
            self._resolver.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # -- accessors -------------------------------------------------------

    @property
    def scheduler(self) -> RunScheduler:
        if self._scheduler is None:
            raise RuntimeError("VerificationRun used outside 'async with'")
        return self._scheduler

    @property
    def resolver(self) -> CredentialResolver:
        if self._resolver is None:
            raise RuntimeError("VerificationRun used outside 'async with'")
        return self._resolver

    @property
    def lifecycle(self) -> ArtifactLifecycleManager:
        if self._lifecycle is None:
            raise RuntimeError("VerificationRun used outside 'async with'")
        return self._lifecycle

    # -- operations ------------------------------------------------------

    async def execute(self, *, raise_on_cancel: bool = False) -> RunReport:
        """Run the plan, then schedule cleanup of the run's artifacts.

        Raises
        ------
        RunCancelled
            Only with ``raise_on_cancel``, when the run was cancelled or hit
            its deadline; the partial report is attached.
        """
        if self.report is not None:
            raise RuntimeError(f"run {self.run_id} already executed")
        report = await self.scheduler.run(self.plan, self.resolver, run_id=self.run_id)
        self.report = report
        if not report.passed and self.lifecycle.retain_on_failure:
            await self.lifecycle.retain(report.run_id)
        self.lifecycle.schedule_cleanup(
            report.run_id, self.settings.artifact_ttl, failed=not report.passed
        )
        if raise_on_cancel and report.cancelled:
            raise RunCancelled(report.run_id, report.cancel_reason or "cancelled", report)
        return report

    def cancel(self, reason: str = "cancelled by operator") -> None:
        self.scheduler.cancel(reason)
