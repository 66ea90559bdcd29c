"""Run scheduler: executes a test plan under concurrency, retry and deadline policy.

Execution model:
- Phases run strictly in order behind a full barrier: phase *k+1* starts only
  after every probe of phase *k* reached a terminal outcome.
- Inside a phase every check runs concurrently; probes of one check run in
  declared order.  A semaphore bounds the number of attempts in flight.
- Each probe gets ``retry.max_attempts`` attempts with capped exponential
  backoff.  A final ``AuthError`` triggers exactly one credential refresh;
  the probe is attempted once more only if the credential actually changed.
- An unexpected error inside one probe is recorded as ``Failed`` for that
  probe only; sibling probes and checks still run.
- A required probe failing in phase *k* lets the rest of phase *k* finish and
  then records every later phase as ``Skipped``.
- The run deadline and ``cancel()`` interrupt the current phase: outstanding
  probes become ``TimedOut`` (deadline) or ``Cancelled`` and later phases are
  skipped.  Partial results are always reported.

Suspension happens only at network waits and backoff sleeps.  Every
``ProbeResult`` has a single writer (the coroutine that ran the probe, or the
scheduler when it marks outstanding probes after an interruption).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from platform_verify.engine.credentials import CredentialResolver
from platform_verify.engine.exceptions import (
    AssertionFailed,
    AuthError,
    CredentialInvalid,
    CredentialUnavailable,
    ProbeError,
    ProbeTimedOut,
    Unreachable,
)
from platform_verify.engine.lifecycle import ArtifactLifecycleManager
from platform_verify.engine.models import (
    CheckKind,
    Outcome,
    OverallStatus,
    Phase,
    Probe,
    ProbeResult,
    RunReport,
    ServiceCheck,
    TestPlan,
)
from platform_verify.engine.probe import ProbeExecutor

log = logging.getLogger(__name__)

__all__ = ["RunScheduler", "classify", "new_run_id"]

_OUTCOME_BY_ERROR: dict[type[ProbeError], Outcome] = {
    Unreachable: Outcome.UNREACHABLE,
    ProbeTimedOut: Outcome.TIMED_OUT,
    AuthError: Outcome.AUTH_ERROR,
    AssertionFailed: Outcome.ASSERTION_FAILED,
}


def new_run_id() -> str:
    return f"run-{datetime.now(timezone.utc):%Y%m%d%H%M%S}-{uuid4().hex[:8]}"


def classify(error: ProbeError) -> Outcome:
    """Map a probe error onto exactly one outcome."""
    for error_type, outcome in _OUTCOME_BY_ERROR.items():
        if isinstance(error, error_type):
            return outcome
    return Outcome.FAILED


@dataclass(slots=True)
class _RunState:
    """Mutable bookkeeping for one run; never shared between runs."""

    run_id: str
    resolver: CredentialResolver
    results: dict[str, ProbeResult] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)


class RunScheduler:
    """Executes a ``TestPlan`` and produces a ``RunReport``.

    Parameters
    ----------
    executor : ProbeExecutor
        Performs single probe attempts.
    max_in_flight : int
        Upper bound on concurrently executing probe attempts.
    run_deadline : float | None
        Seconds after which outstanding probes are marked ``TimedOut``.
    lifecycle : ArtifactLifecycleManager | None
        Receives evidence for failed probes and resources created by probes.
    """

    def __init__(
        self,
        executor: ProbeExecutor,
        *,
        max_in_flight: int = 8,
        run_deadline: float | None = None,
        lifecycle: ArtifactLifecycleManager | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        if run_deadline is not None and run_deadline <= 0:
            raise ValueError("run_deadline must be positive")
        self.executor = executor
        self.max_in_flight = max_in_flight
        self.run_deadline = run_deadline
        self.lifecycle = lifecycle
        self._sleep = sleep
        self._slots = asyncio.Semaphore(max_in_flight)
        self._cancel_event = asyncio.Event()
        self._cancel_reason = "run cancelled"
        self.in_flight = 0
        self.peak_in_flight = 0

    def cancel(self, reason: str = "run cancelled") -> None:
        """Request cooperative cancellation of the current run."""
        self._cancel_reason = reason
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # -- run -------------------------------------------------------------

    async def run(
        self,
        plan: TestPlan,
        resolver: CredentialResolver,
        *,
        run_id: str | None = None,
    ) -> RunReport:
        state = _RunState(run_id=run_id or new_run_id(), resolver=resolver)
        started_at = datetime.now(timezone.utc)
        loop = asyncio.get_running_loop()
        deadline = None if self.run_deadline is None else loop.time() + self.run_deadline

        stop_reason: str | None = None
        cancel_reason: str | None = None
        skipped: list[int] = []

        log.info(
            "Run %s starting: %d probes in %d phases",
            state.run_id,
            plan.probe_count,
            len(plan.phases),
        )

        for phase in plan.phases:
            if stop_reason is None and self.cancelled:
                stop_reason = cancel_reason = self._cancel_reason
            if stop_reason is not None:
                self._mark_outstanding(phase, state, Outcome.SKIPPED, stop_reason)
                skipped.append(phase.index)
                continue

            log.info("Run %s phase %d: %s", state.run_id, phase.index, ", ".join(phase.service_names))
            interrupted = await self._await_phase(
                asyncio.create_task(self._execute_phase(phase, state)), deadline
            )
            if interrupted is not None:
                outcome, reason = interrupted
                self._mark_outstanding(phase, state, outcome, reason)
                stop_reason = cancel_reason = reason
                log.warning("Run %s interrupted in phase %d: %s", state.run_id, phase.index, reason)
                continue

            blocking = [
                state.results[p.probe_id]
                for c in phase.checks
                for p in c.probes
                if state.results[p.probe_id].blocking
            ]
            if blocking:
                stop_reason = (
                    f"phase {phase.index} had {len(blocking)} failing required "
                    f"probe(s): {', '.join(r.probe_id for r in blocking)}"
                )
                log.warning("Run %s: %s; later phases skipped", state.run_id, stop_reason)

        ordered = {
            p.probe_id: state.results[p.probe_id] for c in plan.checks for p in c.probes
        }
        failed = cancel_reason is not None or any(r.blocking for r in ordered.values())
        report = RunReport(
            run_id=state.run_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            results=ordered,
            overall=OverallStatus.FAILED if failed else OverallStatus.PASSED,
            cancelled=cancel_reason is not None,
            cancel_reason=cancel_reason,
            skipped_phases=tuple(skipped),
        )
        log.info(
            "Run %s finished: %s in %.2fs %s",
            report.run_id,
            report.overall.value,
            report.duration,
            report.counts(),
        )
        return report

    async def _await_phase(
        self, task: asyncio.Task[None], deadline: float | None
    ) -> tuple[Outcome, str] | None:
        """Wait for a phase; on deadline or cancel, stop it and say why."""
        loop = asyncio.get_running_loop()
        timeout = None if deadline is None else max(0.0, deadline - loop.time())
        cancel_wait = asyncio.create_task(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if task in done:
            task.result()
            return None

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        if self._cancel_event.is_set():
            return Outcome.CANCELLED, self._cancel_reason
        return Outcome.TIMED_OUT, f"run deadline of {self.run_deadline}s exceeded"

    # -- phase / check ---------------------------------------------------

    async def _execute_phase(self, phase: Phase, state: _RunState) -> None:
        credential_error: CredentialUnavailable | None = None
        if phase.needs_credentials:
            names = set()
            for check in phase.checks:
                names |= check.credential_names
            try:
                await state.resolver.resolve(names)
            except CredentialUnavailable as e:
                credential_error = e
                log.error("Run %s phase %d: %s", state.run_id, phase.index, e)

        await asyncio.gather(
            *(self._run_check(check, phase.index, state, credential_error) for check in phase.checks)
        )

    async def _run_check(
        self,
        check: ServiceCheck,
        phase_index: int,
        state: _RunState,
        credential_error: CredentialUnavailable | None,
    ) -> None:
        for probe in check.probes:
            try:
                result = await self._run_probe(probe, check, phase_index, state, credential_error)
            except Exception as e:
                log.exception("Probe %s (%s) raised unexpectedly", probe.probe_id, check.service_name)
                result = ProbeResult(
                    probe_id=probe.probe_id,
                    service=check.service_name,
                    phase=phase_index,
                    outcome=Outcome.FAILED,
                    attempt_count=state.attempts.get(probe.probe_id, 0),
                    last_error=f"{e.__class__.__name__}: {e}",
                    optional=probe.optional or check.optional,
                    gateway=check.kind is CheckKind.GATEWAY,
                )
            state.results[probe.probe_id] = result
            log.log(
                logging.INFO if result.passed or result.optional else logging.WARNING,
                "Probe %s (%s): %s after %d attempt(s)%s",
                probe.probe_id,
                check.service_name,
                result.outcome.value,
                result.attempt_count,
                f": {result.last_error}" if result.last_error else "",
            )

    # -- probe -----------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        async with self._slots:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1

    async def _run_probe(
        self,
        probe: Probe,
        check: ServiceCheck,
        phase_index: int,
        state: _RunState,
        credential_error: CredentialUnavailable | None,
    ) -> ProbeResult:
        def result(outcome: Outcome, **kwargs) -> ProbeResult:
            return ProbeResult(
                probe_id=probe.probe_id,
                service=check.service_name,
                phase=phase_index,
                outcome=outcome,
                optional=probe.optional or check.optional,
                gateway=check.kind is CheckKind.GATEWAY,
                **kwargs,
            )

        name = probe.credential_name
        if name is not None and credential_error is not None and name in credential_error.names:
            return result(Outcome.AUTH_ERROR, attempt_count=0, last_error=str(credential_error))
        credential = None if name is None else state.resolver.get(name)

        attempt = 0
        last_error: ProbeError | None = None
        latency = 0.0
        refreshed = False
        try:
            while attempt < probe.retry.max_attempts:
                attempt += 1
                state.attempts[probe.probe_id] = attempt
                delay = probe.retry.delay_before(attempt)
                if delay:
                    await self._sleep(delay)
                started = time.monotonic()
                try:
                    async with self._slot():
                        response = await self.executor.attempt(probe, check, credential)
                except ProbeError as e:
                    latency = time.monotonic() - started
                    last_error = e
                    log.debug("Probe %s attempt %d/%d: %s", probe.probe_id, attempt, probe.retry.max_attempts, e)
                    continue
                await self._record_resource(probe, state, response.location)
                return result(
                    Outcome.PASSED,
                    attempt_count=attempt,
                    latency=response.latency,
                    status_code=response.status_code,
                )

            if isinstance(last_error, AuthError) and name is not None:
                refreshed = True
                new_credential = await state.resolver.refresh(name)
                if new_credential is not None and (
                    credential is None or new_credential.reveal() != credential.reveal()
                ):
                    attempt += 1
                    state.attempts[probe.probe_id] = attempt
                    started = time.monotonic()
                    try:
                        async with self._slot():
                            response = await self.executor.attempt(probe, check, new_credential)
                    except ProbeError as e:
                        latency = time.monotonic() - started
                        last_error = e
                    else:
                        await self._record_resource(probe, state, response.location)
                        return result(
                            Outcome.PASSED,
                            attempt_count=attempt,
                            latency=response.latency,
                            status_code=response.status_code,
                            credential_refreshed=True,
                        )
                if isinstance(last_error, AuthError):
                    log.warning("%s", CredentialInvalid(name, last_error.status_code))
        except (ValueError, OSError) as e:
            # misconfigured target or local I/O failure; not retryable
            last = result(Outcome.FAILED, attempt_count=attempt, last_error=f"{e.__class__.__name__}: {e}")
            await self._record_evidence(state, last, "")
            return last

        assert last_error is not None
        failed = result(
            classify(last_error),
            attempt_count=attempt,
            latency=latency,
            last_error=last_error.message,
            status_code=getattr(last_error, "status_code", None),
            credential_refreshed=refreshed,
        )
        await self._record_evidence(state, failed, getattr(last_error, "body_excerpt", ""))
        return failed

    def _mark_outstanding(
        self, phase: Phase, state: _RunState, outcome: Outcome, reason: str
    ) -> None:
        for check in phase.checks:
            for probe in check.probes:
                if probe.probe_id in state.results:
                    continue
                state.results[probe.probe_id] = ProbeResult(
                    probe_id=probe.probe_id,
                    service=check.service_name,
                    phase=phase.index,
                    outcome=outcome,
                    attempt_count=state.attempts.get(probe.probe_id, 0),
                    last_error=reason,
                    optional=probe.optional or check.optional,
                    gateway=check.kind is CheckKind.GATEWAY,
                )

    # -- artifacts -------------------------------------------------------

    async def _record_resource(self, probe: Probe, state: _RunState, location: str | None) -> None:
        if self.lifecycle is None or not probe.creates_artifact:
            return
        if location is None:
            log.warning("Probe %s creates an artifact but returned no Location header", probe.probe_id)
            return
        await self.lifecycle.record_resource(state.run_id, location)

    async def _record_evidence(self, state: _RunState, result: ProbeResult, body: str) -> None:
        if self.lifecycle is None:
            return
        lines = [
            f"run_id: {state.run_id}",
            f"probe: {result.probe_id}",
            f"service: {result.service}",
            f"phase: {result.phase}",
            f"outcome: {result.outcome.value}",
            f"attempts: {result.attempt_count}",
            f"status_code: {result.status_code}",
            f"error: {result.last_error}",
        ]
        if body:
            lines += ["", body]
        try:
            await self.lifecycle.record_evidence(state.run_id, result.probe_id, "\n".join(lines) + "\n")
        except OSError as e:
            log.warning("Could not write evidence for %s: %s", result.probe_id, e)
