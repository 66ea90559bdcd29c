"""Unit tests for run reporting."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import make_check
from platform_verify.engine.credentials import CredentialResolver, StaticCredentialSource
from platform_verify.engine.models import Outcome, OverallStatus, ProbeResult, RunReport
from platform_verify.engine.plan import build_plan
from platform_verify.engine.probe import ProbeExecutor
from platform_verify.engine.reporter import (
    EXIT_CANCELLED,
    EXIT_FAILED,
    EXIT_PASSED,
    render_markdown,
    summarize,
    to_json,
    triage_hint,
    write_report,
)
from platform_verify.engine.scheduler import RunScheduler

STARTED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _result(probe_id: str, outcome: Outcome, **kwargs) -> ProbeResult:
    kwargs.setdefault("service", probe_id.split("-")[0])
    kwargs.setdefault("phase", 0)
    kwargs.setdefault("attempt_count", 1)
    return ProbeResult(probe_id=probe_id, outcome=outcome, **kwargs)


def _report(*results: ProbeResult, **kwargs) -> RunReport:
    blocking = any(r.blocking for r in results) or kwargs.get("cancelled", False)
    return RunReport(
        run_id="run-test",
        started_at=STARTED,
        finished_at=STARTED + timedelta(seconds=4.2),
        results={r.probe_id: r for r in results},
        overall=OverallStatus.FAILED if blocking else OverallStatus.PASSED,
        **kwargs,
    )


def test_passed_run_exits_zero():
    text, code = summarize(_report(_result("db-port", Outcome.PASSED)))
    assert code == EXIT_PASSED
    assert text.startswith("Run run-test: PASSED (1/1 probes passed in 4.2s)")
    assert "Failed probes" not in text


def test_summary_lists_every_probe_with_attempts():
    report = _report(
        _result("db-health", Outcome.PASSED, attempt_count=2),
        _result("rest-root", Outcome.PASSED, phase=1),
        _result("minio-live", Outcome.UNREACHABLE, optional=True, attempt_count=3),
    )
    text, code = summarize(report)
    assert code == EXIT_PASSED
    assert "ok phase 0  db/db-health: Passed, 2 attempt(s)" in text
    assert "ok phase 1  rest/rest-root: Passed, 1 attempt(s)" in text
    assert "-- phase 0  minio/minio-live (optional): Unreachable, 3 attempt(s)" in text


@pytest.mark.asyncio
async def test_retried_pass_shows_in_summary(platform, fake_sleep):
    platform.route(
        "GET", "http://db:8080/health", httpx.Response(503), httpx.Response(200, json={})
    )
    plan = build_plan([make_check("db")])
    async with platform.client() as client:
        scheduler = RunScheduler(ProbeExecutor(client), sleep=fake_sleep)
        report = await scheduler.run(plan, CredentialResolver(StaticCredentialSource()))

    assert report.results["db-health"].attempt_count == 2
    text, code = summarize(report)
    assert code == EXIT_PASSED
    assert "db/db-health: Passed, 2 attempt(s)" in text


def test_failed_run_lists_every_failure_with_hint():
    report = _report(
        _result("db-port", Outcome.UNREACHABLE, last_error="TCP connect to db:5432 failed"),
        _result("auth-health", Outcome.SKIPPED, phase=1, attempt_count=0, last_error="phase 0 failed"),
        _result("rest-root", Outcome.PASSED),
    )
    text, code = summarize(report)
    assert code == EXIT_FAILED
    assert "[Unreachable] db/db-port phase 0, 1 attempt(s)" in text
    assert "error: TCP connect to db:5432 failed" in text
    assert "[Skipped] auth/auth-health phase 1, 0 attempt(s)" in text
    assert "not run because an earlier phase failed" in text
    # skipped probes do not repeat the barrier reason as an error
    assert "error: phase 0 failed" not in text


def test_optional_failure_does_not_change_exit_code():
    report = _report(
        _result("db-port", Outcome.PASSED),
        _result("minio-live", Outcome.UNREACHABLE, optional=True),
    )
    text, code = summarize(report)
    assert code == EXIT_PASSED
    assert "minio/minio-live (optional)" in text


def test_cancelled_run_exits_two():
    report = _report(
        _result("db-port", Outcome.TIMED_OUT, last_error="run deadline of 2.0s exceeded"),
        cancelled=True,
        cancel_reason="run deadline of 2.0s exceeded",
        skipped_phases=(1, 2),
    )
    text, code = summarize(report)
    assert code == EXIT_CANCELLED
    assert "cancelled: run deadline of 2.0s exceeded" in text
    assert "skipped phases: 1, 2" in text


def test_failures_sorted_required_first():
    report = _report(
        _result("minio-live", Outcome.UNREACHABLE, optional=True),
        _result("rest-root", Outcome.AUTH_ERROR, phase=1),
        _result("db-port", Outcome.UNREACHABLE),
    )
    assert [r.probe_id for r in report.failures()] == ["db-port", "rest-root", "minio-live"]


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (_result("gw-auth", Outcome.UNREACHABLE, gateway=True), "gateway routing"),
        (_result("gw-auth", Outcome.AUTH_ERROR, gateway=True, attempt_count=0), "not yet propagated"),
        (_result("gw-auth", Outcome.AUTH_ERROR, gateway=True, attempt_count=3), "credential rejected"),
        (_result("db-port", Outcome.UNREACHABLE), "not running"),
        (_result("rest-root", Outcome.ASSERTION_FAILED), "not as expected"),
    ],
)
def test_triage_hint(result, expected):
    assert expected in triage_hint(result)


def test_markdown_report_has_table_and_triage():
    report = _report(
        _result("db-port", Outcome.PASSED, latency=0.012),
        _result("rest-root", Outcome.ASSERTION_FAILED, last_error="expected HTTP 200, got 500 | boom"),
    )
    markdown = render_markdown(report)
    assert markdown.startswith("# Platform Verification Report: run-test")
    assert "**Verdict:** FAILED" in markdown
    assert "| 0 | db | db-port | ✓ Passed | 1 | 12 ms |  |" in markdown
    assert "got 500 \\| boom" in markdown
    assert "## Triage" in markdown


def test_json_report_round_trips_fields():
    report = _report(_result("db-port", Outcome.PASSED, latency=0.5, status_code=None))
    data = json.loads(to_json(report))
    assert data["run_id"] == "run-test"
    assert data["overall"] == "Passed"
    assert data["counts"] == {"Passed": 1}
    assert data["results"]["db-port"]["latency_ms"] == 500.0


def test_write_report_picks_format_by_suffix(tmp_path):
    report = _report(_result("db-port", Outcome.PASSED))
    write_report(report, tmp_path / "out" / "report.json")
    write_report(report, tmp_path / "out" / "report.md")
    assert json.loads((tmp_path / "out" / "report.json").read_text())["run_id"] == "run-test"
    assert (tmp_path / "out" / "report.md").read_text().startswith("# Platform Verification")
