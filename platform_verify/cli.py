"""CLI for post-deployment platform verification.

Usage:
    python -m platform_verify run -c config/platform-checks.yaml
    python -m platform_verify run --deadline 120 --report out/report.md
    python -m platform_verify plan -c config/platform-checks.yaml
    python -m platform_verify sweep                 # reclaim expired artifacts
    python -m platform_verify ack RUN_ID            # release a retained failed run

Exit codes: 0 passed, 1 required probe failed, 2 cancelled or timed out,
3 plan or configuration error.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from platform_verify.declarations import load_declarations
from platform_verify.engine.credentials import (
    ChainCredentialSource,
    CredentialSource,
    EnvCredentialSource,
    FileCredentialSource,
)
from platform_verify.engine.exceptions import DeclarationError, PlanError
from platform_verify.engine.lifecycle import (
    ArtifactKind,
    ArtifactLifecycleManager,
    DirectoryArtifactStore,
    HttpDeleter,
)
from platform_verify.engine.plan import build_plan
from platform_verify.engine.reporter import EXIT_CONFIG_ERROR, summarize, to_json, write_report
from platform_verify.engine.run import VerificationRun
from platform_verify.settings import VerifySettings

log = logging.getLogger(__name__)


def _settings(args: argparse.Namespace) -> VerifySettings:
    """Environment settings with CLI overrides applied."""
    overrides: dict[str, Any] = {}
    for arg, key in (
        ("checks", "checks_file"),
        ("gateway_url", "gateway_url"),
        ("deadline", "run_deadline"),
        ("max_in_flight", "max_in_flight"),
        ("credentials_dir", "credentials_dir"),
        ("artifact_dir", "artifact_dir"),
        ("ttl", "artifact_ttl"),
        ("log_level", "log_level"),
    ):
        value = getattr(args, arg, None)
        if value is not None:
            overrides[key] = value
    if getattr(args, "retain_on_failure", False):
        overrides["retain_on_failure"] = True
    try:
        settings = VerifySettings()
        if overrides:
            # validated so CLI flags obey the same bounds as the environment
            settings = VerifySettings.model_validate({**settings.model_dump(), **overrides})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
        )
        _fail(f"invalid settings: {problems}")
    return settings


def _credential_source(settings: VerifySettings) -> CredentialSource:
    env = EnvCredentialSource(prefix=settings.credential_env_prefix)
    if settings.credentials_dir is None:
        return env
    return ChainCredentialSource(FileCredentialSource(settings.credentials_dir), env)


def _fail(message: str, code: int = EXIT_CONFIG_ERROR) -> None:
    print(f"ERROR: {message}", file=sys.stderr)
    sys.exit(code)


# ── commands ─────────────────────────────────────────


def cmd_run(args: argparse.Namespace) -> None:
    """Execute the verification plan and report."""
    settings = _settings(args)
    try:
        declarations = load_declarations(settings.checks_file)
        run = VerificationRun(
            declarations.checks,
            _credential_source(settings),
            gateway_url=settings.gateway_url or declarations.gateway_url,
            settings=settings,
        )
    except (DeclarationError, PlanError, ValueError) as exc:
        _fail(str(exc))
        return

    report = asyncio.run(_execute(run, wait_cleanup=args.wait_cleanup))
    text, code = summarize(report)
    if args.json:
        print(to_json(report))
    else:
        print(text)
    if args.report:
        write_report(report, Path(args.report))
        print(f"\nReport written to: {args.report}", file=sys.stderr)
    sys.exit(code)


async def _execute(run: VerificationRun, *, wait_cleanup: bool) -> Any:
    loop = asyncio.get_running_loop()
    async with run:
        for sig in (signal.SIGINT, signal.SIGTERM):
            # not available on Windows event loops
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, run.cancel, f"received {sig.name}")
        try:
            report = await run.execute()
            if wait_cleanup:
                await run.lifecycle.wait_idle()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(sig)
    return report


def cmd_plan(args: argparse.Namespace) -> None:
    """Validate declarations and print the phased plan without probing."""
    settings = _settings(args)
    try:
        declarations = load_declarations(settings.checks_file)
        plan = build_plan(declarations.checks)
    except (DeclarationError, PlanError) as exc:
        _fail(str(exc))
        return

    print(f"Plan: {len(plan.checks)} checks, {plan.probe_count} probes, {len(plan.phases)} phases")
    for phase in plan.phases:
        print(f"  Phase {phase.index}:")
        for check in phase.checks:
            flag = " (optional)" if check.optional else ""
            print(f"    {check.kind.value:8s} {check.service_name}{flag}")
            for probe in check.probes:
                auth = "" if probe.credential_name is None else f" [{probe.credential_name}]"
                print(f"      - {probe.probe_id}: {probe.method} {probe.target}{auth}")


def _manager(settings: VerifySettings, client: httpx.AsyncClient) -> ArtifactLifecycleManager:
    return ArtifactLifecycleManager(
        DirectoryArtifactStore(settings.artifact_dir),
        deleters={ArtifactKind.HTTP.value: HttpDeleter(client)},
        grace_window=settings.grace_window,
        evidence_dir=settings.artifact_dir,
    )


def cmd_sweep(args: argparse.Namespace) -> None:
    """Delete expired artifacts of every non-retained run."""
    settings = _settings(args)

    async def sweep() -> int:
        async with httpx.AsyncClient() as client:
            return await _manager(settings, client).sweep(settings.artifact_ttl)

    deleted = asyncio.run(sweep())
    print(f"Swept {deleted} expired artifact(s) from {settings.artifact_dir}")


def cmd_ack(args: argparse.Namespace) -> None:
    """Acknowledge a failed run so its retained artifacts can be reclaimed."""
    settings = _settings(args)

    async def ack() -> int | None:
        async with httpx.AsyncClient() as client:
            manager = _manager(settings, client)
            if args.run_id not in await manager.store.retained_runs():
                return None
            manager.acknowledge(args.run_id)
            await manager.store.set_retained(args.run_id, False)
            if args.now:
                return await manager.cleanup_now(args.run_id)
            return await manager.sweep(settings.artifact_ttl)

    deleted = asyncio.run(ack())
    if deleted is None:
        _fail(f"run {args.run_id!r} is not retained", code=1)
    print(f"Run {args.run_id} acknowledged; deleted {deleted} artifact(s)")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="platform-verify",
        description="Post-deployment verification of a multi-service platform",
    )
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    parser.add_argument("--artifact-dir", type=Path, help="Artifact and evidence directory")
    sub = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = sub.add_parser("run", help="Run the verification plan")
    p_run.add_argument("-c", "--checks", type=Path, help="Path to declarations YAML")
    p_run.add_argument("--gateway-url", help="Override the shared ingress address")
    p_run.add_argument("--deadline", type=float, help="Run deadline in seconds")
    p_run.add_argument("--max-in-flight", type=int, help="Concurrent probe attempts")
    p_run.add_argument("--credentials-dir", type=Path, help="Mounted secret directory")
    p_run.add_argument("--ttl", type=float, help="Artifact time-to-live in seconds")
    p_run.add_argument("--retain-on-failure", action="store_true", help="Keep failed runs' artifacts until ack")
    p_run.add_argument("--wait-cleanup", action="store_true", help="Stay up until artifact cleanup finished")
    p_run.add_argument("--report", help="Write a markdown (.md) or JSON (.json) report")
    p_run.add_argument("--json", action="store_true", help="Print the JSON report instead of the summary")
    p_run.set_defaults(func=cmd_run)

    # plan
    p_plan = sub.add_parser("plan", help="Validate declarations and print the phased plan")
    p_plan.add_argument("-c", "--checks", type=Path, help="Path to declarations YAML")
    p_plan.set_defaults(func=cmd_plan)

    # sweep
    p_sweep = sub.add_parser("sweep", help="Reclaim expired artifacts")
    p_sweep.add_argument("--ttl", type=float, help="Artifact time-to-live in seconds")
    p_sweep.set_defaults(func=cmd_sweep)

    # ack
    p_ack = sub.add_parser("ack", help="Release a retained failed run for cleanup")
    p_ack.add_argument("run_id", help="Run identifier from the report")
    p_ack.add_argument("--ttl", type=float, help="Artifact time-to-live in seconds")
    p_ack.add_argument("--now", action="store_true", help="Delete immediately, ignoring the TTL")
    p_ack.set_defaults(func=cmd_ack)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=_settings(args).log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    args.func(args)


if __name__ == "__main__":
    main()
