"""Verification engine exception hierarchy.

Three families, matching where each error surfaces:

- Plan-build errors (``PlanError``) are fatal and raised before any probe runs.
- Credential errors (``CredentialError``) are raised by the resolver and
  recorded against the probes that needed the credential.
- Probe errors (``ProbeError``) are raised inside the probe executor and are
  always converted into a ``ProbeResult`` outcome; they never escape a phase.

All engine exceptions inherit from ``VerificationError`` so the CLI can
handle them with a single ``except`` at the process boundary.  Every class
carries an ``error_code`` string for machine-readable reporting.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class VerificationError(Exception):
    """Base exception for all verification engine failures."""

    error_code = "verification_error"


# ---------------------------------------------------------------------------
# Plan-build errors
# ---------------------------------------------------------------------------


class PlanError(VerificationError):
    """Raised when declarations cannot be compiled into a test plan."""

    error_code = "plan_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class CyclicDependency(PlanError):
    """Raised when the check dependency graph contains a cycle."""

    error_code = "cyclic_dependency"

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"cyclic dependency between checks: {' -> '.join(cycle)}")


class UnknownDependency(PlanError):
    """Raised when a check depends on (or routes to) an undeclared service."""

    error_code = "unknown_dependency"

    def __init__(self, check: str, missing: str) -> None:
        self.check = check
        self.missing = missing
        super().__init__(f"check {check!r} depends on undeclared service {missing!r}")


class DuplicateCheck(PlanError):
    """Raised when two checks (or two probes) share a name."""

    error_code = "duplicate_check"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"duplicate check or probe id {name!r}")


# ---------------------------------------------------------------------------
# Credential errors
# ---------------------------------------------------------------------------


class CredentialError(VerificationError):
    """Base class for credential resolution failures."""

    error_code = "credential_error"


class CredentialUnavailable(CredentialError):
    """Raised when a secret has not yet propagated from the secret source."""

    error_code = "credential_unavailable"

    def __init__(self, names: Iterable[str]) -> None:
        self.names = tuple(sorted(names))
        super().__init__(
            f"credential(s) not yet available: {', '.join(self.names)}"
        )


class CredentialInvalid(CredentialError):
    """Raised when a credential is present but rejected by the target."""

    error_code = "credential_invalid"

    def __init__(self, name: str, status_code: int | None = None) -> None:
        self.name = name
        self.status_code = status_code
        detail = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"credential {name!r} rejected by target{detail}")


# ---------------------------------------------------------------------------
# Probe errors (converted to outcomes by the scheduler)
# ---------------------------------------------------------------------------


class ProbeError(VerificationError):
    """Base class for a single failed probe attempt."""

    error_code = "probe_error"

    def __init__(self, probe_id: str, message: str) -> None:
        self.probe_id = probe_id
        self.message = message
        super().__init__(f"probe {probe_id!r}: {message}")


class Unreachable(ProbeError):
    """Connection or DNS failure."""

    error_code = "unreachable"


class ProbeTimedOut(ProbeError):
    """No response within the probe timeout."""

    error_code = "timed_out"


class AuthError(ProbeError):
    """Authentication or authorization rejected by the target."""

    error_code = "auth_error"

    def __init__(self, probe_id: str, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(probe_id, message)


class AssertionFailed(ProbeError):
    """Response received but did not match the expected status or body."""

    error_code = "assertion_failed"

    def __init__(
        self,
        probe_id: str,
        message: str,
        *,
        status_code: int | None = None,
        body_excerpt: str = "",
    ) -> None:
        self.status_code = status_code
        self.body_excerpt = body_excerpt
        super().__init__(probe_id, message)


# ---------------------------------------------------------------------------
# Run-level errors
# ---------------------------------------------------------------------------


class RunCancelled(VerificationError):
    """Raised when a run is cancelled externally or hits its deadline.

    ``report`` carries the partial results gathered before the interruption.
    """

    error_code = "run_cancelled"

    def __init__(self, run_id: str, reason: str, report: Any = None) -> None:
        self.run_id = run_id
        self.reason = reason
        self.report = report
        super().__init__(f"run {run_id!r} cancelled: {reason}")


class DeclarationError(VerificationError):
    """Raised when a declarations file is missing or fails validation."""

    error_code = "declaration_error"

    def __init__(self, source: str, detail: str) -> None:
        self.source = source
        self.detail = detail
        super().__init__(f"invalid declarations in {source}: {detail}")
