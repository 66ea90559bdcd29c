"""Run reporter: operator summary, exit code, markdown and JSON renderings.

Exit codes::

    0  every required probe passed
    1  at least one required probe failed
    2  the run was cancelled or hit its deadline
    3  plan or configuration error (raised before any probe ran; see cli)

Usage (programmatic)::

    from platform_verify.engine.reporter import summarize
    text, code = summarize(report)
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from platform_verify.engine.models import Outcome, ProbeResult, RunReport

if TYPE_CHECKING:
    from pathlib import Path

__all__ = [
    "EXIT_CANCELLED",
    "EXIT_CONFIG_ERROR",
    "EXIT_FAILED",
    "EXIT_PASSED",
    "exit_code",
    "render_markdown",
    "summarize",
    "to_json",
    "triage_hint",
    "write_report",
]

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2
EXIT_CONFIG_ERROR = 3

_HINTS: dict[Outcome, str] = {
    Outcome.UNREACHABLE: "service not running or not listening; check the container and its port",
    Outcome.TIMED_OUT: "service accepted no response in time; check health and load",
    Outcome.AUTH_ERROR: "credential rejected; check key propagation and rotation",
    Outcome.ASSERTION_FAILED: "service answered but not as expected; check its logs and config",
    Outcome.FAILED: "verifier could not execute the probe; check the declaration",
    Outcome.CANCELLED: "run was cancelled before the probe finished",
    Outcome.SKIPPED: "not run because an earlier phase failed",
}

_GATEWAY_HINT = "gateway routing stale or missing; compare with the direct service check"
_PROPAGATION_HINT = "credential not yet propagated; check the secret sync"


def exit_code(report: RunReport) -> int:
    if report.cancelled:
        return EXIT_CANCELLED
    return EXIT_PASSED if report.passed else EXIT_FAILED


def triage_hint(result: ProbeResult) -> str:
    """One-line pointer at the likely root cause of a failed probe."""
    if result.gateway and result.outcome in (
        Outcome.UNREACHABLE,
        Outcome.TIMED_OUT,
        Outcome.ASSERTION_FAILED,
    ):
        return _GATEWAY_HINT
    if result.outcome is Outcome.AUTH_ERROR and result.attempt_count == 0:
        return _PROPAGATION_HINT
    return _HINTS.get(result.outcome, "")


def summarize(report: RunReport) -> tuple[str, int]:
    """Return the plain-text operator summary and the process exit code."""
    code = exit_code(report)
    total = len(report.results)
    passed = sum(1 for r in report.results.values() if r.passed)
    lines = [
        f"Run {report.run_id}: {report.overall.value.upper()} "
        f"({passed}/{total} probes passed in {report.duration:.1f}s)",
    ]
    if report.cancelled:
        lines.append(f"  cancelled: {report.cancel_reason}")
    if report.skipped_phases:
        lines.append(f"  skipped phases: {', '.join(str(p) for p in report.skipped_phases)}")

    if report.results:
        lines.append("")
        lines.append("Probes:")
        for result in report.results.values():
            mark = "ok" if result.passed else ("--" if result.optional else "!!")
            flag = " (optional)" if result.optional else ""
            lines.append(
                f"  {mark} phase {result.phase}  {result.service}/{result.probe_id}{flag}: "
                f"{result.outcome.value}, {result.attempt_count} attempt(s)"
            )

    failures = report.failures()
    if failures:
        lines.append("")
        lines.append("Failed probes:")
        for result in failures:
            flag = " (optional)" if result.optional else ""
            lines.append(
                f"  [{result.outcome.value}] {result.service}/{result.probe_id}{flag} "
                f"phase {result.phase}, {result.attempt_count} attempt(s)"
            )
            if result.last_error and result.outcome is not Outcome.SKIPPED:
                lines.append(f"      error: {result.last_error}")
            hint = triage_hint(result)
            if hint:
                lines.append(f"      hint:  {hint}")
    return "\n".join(lines), code


def render_markdown(report: RunReport) -> str:
    """Render a RunReport to markdown."""
    lines: list[str] = []
    lines.append(f"# Platform Verification Report: {report.run_id}")
    lines.append("")
    lines.append(f"**Started:** {report.started_at.isoformat(timespec='seconds')}")
    lines.append(f"**Duration:** {report.duration:.1f}s")
    lines.append(f"**Verdict:** {report.overall.value.upper()}")
    if report.cancelled:
        lines.append(f"**Cancelled:** {report.cancel_reason}")
    lines.append("")
    counts = ", ".join(f"{n} {outcome}" for outcome, n in sorted(report.counts().items()))
    lines.append(f"**Summary:** {counts}")
    lines.append("")

    lines.append("## Probes")
    lines.append("")
    lines.append("| Phase | Service | Probe | Outcome | Attempts | Latency | Detail |")
    lines.append("|-------|---------|-------|---------|----------|---------|--------|")
    for result in report.results.values():
        icon = "✓" if result.passed else ("○" if result.optional else "✗")
        detail = (result.last_error or "").replace("|", "\\|")
        lines.append(
            f"| {result.phase} | {result.service} | {result.probe_id} | "
            f"{icon} {result.outcome.value} | {result.attempt_count} | "
            f"{result.latency * 1000:.0f} ms | {detail} |"
        )
    lines.append("")

    failures = [r for r in report.failures() if r.outcome is not Outcome.SKIPPED]
    if failures:
        lines.append("## Triage")
        lines.append("")
        for result in failures:
            lines.append(f"- **{result.service}/{result.probe_id}:** {triage_hint(result)}")
        lines.append("")
    return "\n".join(lines)


def to_json(report: RunReport) -> str:
    return json.dumps(report.to_dict(), indent=2)


def write_report(report: RunReport, path: Path) -> None:
    """Write markdown or JSON depending on the file suffix."""
    text = to_json(report) if path.suffix == ".json" else render_markdown(report)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
