"""Core data model for platform verification.

This module provides:
- AuthRequirement: which credential (if any) a probe presents
- Outcome / OverallStatus: probe-level and run-level classifications
- RetryPolicy: attempt count and capped exponential backoff
- Probe: one HTTP/TCP check against one target
- ServiceCheck: probes verifying a single backend service directly
- GatewayCheck: probes exercising services through the shared ingress
- Phase / TestPlan: layered execution graph built from the checks
- ProbeResult / RunReport: immutable records produced by a run

Everything here is immutable once a plan is built; the scheduler creates
``ProbeResult`` objects and never mutates them afterwards.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from platform_verify.engine.predicates import BodyPredicate

__all__ = [
    "AuthRequirement",
    "CheckKind",
    "GatewayCheck",
    "Outcome",
    "OverallStatus",
    "Phase",
    "Probe",
    "ProbeResult",
    "RetryPolicy",
    "RunReport",
    "ServiceCheck",
    "TestPlan",
]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AuthRequirement(str, Enum):  # noqa: UP042
    """Credential a probe must present to its target."""

    NONE = "none"
    ANON_KEY = "anon_key"
    SERVICE_KEY = "service_key"

    @property
    def credential_name(self) -> str | None:
        return None if self is AuthRequirement.NONE else self.value


class Outcome(str, Enum):  # noqa: UP042
    """Terminal classification of a probe."""

    PASSED = "Passed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    UNREACHABLE = "Unreachable"
    AUTH_ERROR = "AuthError"
    ASSERTION_FAILED = "AssertionFailed"
    CANCELLED = "Cancelled"
    SKIPPED = "Skipped"


class OverallStatus(str, Enum):  # noqa: UP042
    """Run-level verdict."""

    PASSED = "Passed"
    FAILED = "Failed"


class CheckKind(str, Enum):  # noqa: UP042
    SERVICE = "service"
    GATEWAY = "gateway"


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Attempt budget and backoff for a single probe.

    Attributes
    ----------
    max_attempts : int
        Total attempts including the first one.
    backoff_base : float
        Delay in seconds before the second attempt.
    backoff_cap : float
        Upper bound in seconds for any single backoff sleep.
    """

    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_cap: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base < 0 or self.backoff_cap < 0:
            raise ValueError("backoff durations cannot be negative")

    def delay_before(self, attempt: int) -> float:
        """Return the sleep preceding ``attempt`` (1-based; attempt 1 has none)."""
        if attempt <= 1:
            return 0.0
        return min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 2)))


@dataclass(slots=True, frozen=True)
class Probe:
    """Smallest unit of verification: one request with an expected outcome.

    ``target`` is an absolute URL, a path joined onto the owning check's base
    URL, or ``host:port`` when ``method`` is ``"TCP"``.
    """

    probe_id: str
    target: str
    method: str = "GET"
    auth: AuthRequirement = AuthRequirement.NONE
    expected_status: frozenset[int] = frozenset({200})
    expected_body: BodyPredicate | None = None
    timeout: float = 5.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    optional: bool = False
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    creates_artifact: bool = False

    def __post_init__(self) -> None:
        if not self.probe_id:
            raise ValueError("probe_id cannot be empty")
        if not self.target:
            raise ValueError(f"probe {self.probe_id!r} has no target")
        if self.timeout <= 0:
            raise ValueError(f"probe {self.probe_id!r} timeout must be positive")

    @property
    def is_tcp(self) -> bool:
        return self.method.upper() == "TCP"

    @property
    def credential_name(self) -> str | None:
        return self.auth.credential_name


@dataclass(slots=True, frozen=True)
class ServiceCheck:
    """A named group of probes verifying one backend service in isolation."""

    service_name: str
    probes: tuple[Probe, ...]
    depends_on: frozenset[str] = frozenset()
    base_url: str | None = None
    optional: bool = False

    def __post_init__(self) -> None:
        if not self.service_name:
            raise ValueError("service_name cannot be empty")
        if not self.probes:
            raise ValueError(f"check {self.service_name!r} declares no probes")
        if self.service_name in self.depends_on:
            raise ValueError(f"check {self.service_name!r} cannot depend on itself")

    @property
    def kind(self) -> CheckKind:
        return CheckKind.SERVICE

    @property
    def dependencies(self) -> frozenset[str]:
        """Every check that must finish in an earlier phase."""
        return self.depends_on

    @property
    def credential_names(self) -> frozenset[str]:
        return frozenset(
            p.credential_name for p in self.probes if p.credential_name is not None
        )


@dataclass(slots=True, frozen=True)
class GatewayCheck(ServiceCheck):
    """Probes that reach backend services through the shared ingress.

    ``routes_to`` names the services behind the gateway route; they are
    implicit dependencies, so a gateway check always runs after them.
    """

    routes_to: frozenset[str] = frozenset()

    @property
    def kind(self) -> CheckKind:
        return CheckKind.GATEWAY

    @property
    def dependencies(self) -> frozenset[str]:
        return self.depends_on | self.routes_to


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Phase:
    """Checks with no unresolved dependency among themselves."""

    index: int
    checks: tuple[ServiceCheck, ...]

    @property
    def service_names(self) -> tuple[str, ...]:
        return tuple(c.service_name for c in self.checks)

    @property
    def needs_credentials(self) -> bool:
        return any(c.credential_names for c in self.checks)


@dataclass(slots=True, frozen=True)
class TestPlan:
    """Ordered phases; built once per run and never modified."""

    __test__ = False  # not a pytest test class

    phases: tuple[Phase, ...]

    @property
    def checks(self) -> tuple[ServiceCheck, ...]:
        return tuple(c for phase in self.phases for c in phase.checks)

    @property
    def probe_count(self) -> int:
        return sum(len(c.probes) for c in self.checks)

    @property
    def credential_names(self) -> frozenset[str]:
        names: set[str] = set()
        for check in self.checks:
            names |= check.credential_names
        return frozenset(names)

    def phase_of(self, service_name: str) -> int:
        for phase in self.phases:
            if service_name in phase.service_names:
                return phase.index
        raise KeyError(service_name)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Terminal record for one probe; written once by the scheduler."""

    probe_id: str
    service: str
    phase: int
    outcome: Outcome
    attempt_count: int = 0
    latency: float = 0.0
    last_error: str | None = None
    optional: bool = False
    status_code: int | None = None
    credential_refreshed: bool = False
    gateway: bool = False

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASSED

    @property
    def blocking(self) -> bool:
        """True if this result flips the run verdict."""
        return not self.passed and not self.optional

    def to_dict(self) -> dict[str, Any]:
        return {
            "probe_id": self.probe_id,
            "service": self.service,
            "phase": self.phase,
            "outcome": self.outcome.value,
            "attempt_count": self.attempt_count,
            "latency_ms": round(self.latency * 1000, 1),
            "last_error": self.last_error,
            "optional": self.optional,
            "status_code": self.status_code,
            "credential_refreshed": self.credential_refreshed,
            "gateway": self.gateway,
        }


@dataclass(slots=True, frozen=True)
class RunReport:
    """Finalized record of one verification run."""

    run_id: str
    started_at: datetime
    finished_at: datetime
    results: dict[str, ProbeResult]
    overall: OverallStatus
    cancelled: bool = False
    cancel_reason: str | None = None
    skipped_phases: tuple[int, ...] = ()

    @property
    def passed(self) -> bool:
        return self.overall is OverallStatus.PASSED

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def failures(self) -> list[ProbeResult]:
        """Results that did not pass, required ones first."""
        failed = [r for r in self.results.values() if not r.passed]
        return sorted(failed, key=lambda r: (r.optional, r.phase, r.probe_id))

    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for result in self.results.values():
            out[result.outcome.value] = out.get(result.outcome.value, 0) + 1
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "overall": self.overall.value,
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "skipped_phases": list(self.skipped_phases),
            "counts": self.counts(),
            "results": {pid: r.to_dict() for pid, r in self.results.items()},
        }
