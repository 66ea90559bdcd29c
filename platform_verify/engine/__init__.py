"""Verification engine for a freshly deployed multi-service platform.

Builds a phased test plan from service and gateway checks, executes it with
bounded concurrency and retry policy, and reports a pass/fail verdict.
"""

from __future__ import annotations

from .credentials import (
    ChainCredentialSource,
    Credential,
    CredentialResolver,
    CredentialSource,
    EnvCredentialSource,
    FileCredentialSource,
    StaticCredentialSource,
)
from .exceptions import (
    AssertionFailed,
    AuthError,
    CredentialError,
    CredentialInvalid,
    CredentialUnavailable,
    CyclicDependency,
    DeclarationError,
    DuplicateCheck,
    PlanError,
    ProbeError,
    ProbeTimedOut,
    RunCancelled,
    UnknownDependency,
    Unreachable,
    VerificationError,
)
from .lifecycle import (
    Artifact,
    ArtifactLifecycleManager,
    DirectoryArtifactStore,
    InMemoryArtifactStore,
)
from .models import (
    AuthRequirement,
    GatewayCheck,
    Outcome,
    OverallStatus,
    Phase,
    Probe,
    ProbeResult,
    RetryPolicy,
    RunReport,
    ServiceCheck,
    TestPlan,
)
from .plan import TestPlanBuilder, build_plan
from .predicates import BodyPredicate
from .probe import ProbeExecutor
from .reporter import render_markdown, summarize, to_json
from .run import VerificationRun
from .scheduler import RunScheduler

__all__ = [
    "Artifact",
    "ArtifactLifecycleManager",
    "AssertionFailed",
    "AuthError",
    "AuthRequirement",
    "BodyPredicate",
    "ChainCredentialSource",
    "Credential",
    "CredentialError",
    "CredentialInvalid",
    "CredentialResolver",
    "CredentialSource",
    "CredentialUnavailable",
    "CyclicDependency",
    "DeclarationError",
    "DirectoryArtifactStore",
    "DuplicateCheck",
    "EnvCredentialSource",
    "FileCredentialSource",
    "GatewayCheck",
    "InMemoryArtifactStore",
    "Outcome",
    "OverallStatus",
    "Phase",
    "PlanError",
    "Probe",
    "ProbeError",
    "ProbeExecutor",
    "ProbeResult",
    "ProbeTimedOut",
    "RetryPolicy",
    "RunCancelled",
    "RunReport",
    "RunScheduler",
    "ServiceCheck",
    "StaticCredentialSource",
    "TestPlan",
    "TestPlanBuilder",
    "UnknownDependency",
    "Unreachable",
    "VerificationError",
    "VerificationRun",
    "build_plan",
    "render_markdown",
    "summarize",
    "to_json",
]
