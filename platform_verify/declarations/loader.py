"""Load check declarations from YAML into engine checks.

The loader is the only place YAML, pydantic validation and the engine's
frozen dataclasses meet.  Every failure surfaces as ``DeclarationError``
naming the source, so the CLI can map it to the configuration exit code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from platform_verify.declarations.schema import (
    CheckSpec,
    DeclarationsDocument,
    Defaults,
    GatewayCheckSpec,
    ProbeSpec,
)
from platform_verify.engine.exceptions import DeclarationError
from platform_verify.engine.models import GatewayCheck, Probe, RetryPolicy, ServiceCheck
from platform_verify.engine.predicates import BodyPredicate

log = logging.getLogger(__name__)

__all__ = ["Declarations", "load_declarations", "parse_declarations", "to_checks"]


@dataclass(slots=True, frozen=True)
class Declarations:
    """Validated declarations ready for the plan builder."""

    checks: tuple[ServiceCheck, ...]
    gateway_url: str | None = None
    source: str = "<memory>"


def load_declarations(path: Path | str) -> Declarations:
    """Read and validate a declarations file.

    Raises
    ------
    DeclarationError
        If the file is missing, is not valid YAML, or fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise DeclarationError(str(path), "file not found")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise DeclarationError(str(path), f"YAML parse error: {exc}") from exc
    return parse_declarations(data, source=str(path))


def parse_declarations(data: Any, *, source: str = "<memory>") -> Declarations:
    """Validate an already-parsed mapping (e.g. from ``yaml.safe_load``)."""
    if not isinstance(data, dict):
        raise DeclarationError(
            source, f"expected a mapping at top level, got {type(data).__name__}"
        )
    try:
        document = DeclarationsDocument.model_validate(data)
    except ValidationError as exc:
        raise DeclarationError(source, _format_errors(exc)) from exc

    try:
        checks = to_checks(document)
    except ValueError as exc:
        raise DeclarationError(source, str(exc)) from exc

    log.debug("Loaded %d checks from %s", len(checks), source)
    return Declarations(checks=tuple(checks), gateway_url=document.gateway_url, source=source)


def to_checks(document: DeclarationsDocument) -> list[ServiceCheck]:
    """Convert validated specs to engine checks, in declaration order."""
    checks: list[ServiceCheck] = [_service(spec, document.defaults) for spec in document.services]
    checks += [_gateway(spec, document.defaults) for spec in document.gateway]
    return checks


# ── conversion helpers ───────────────────────────────


def _probe(spec: ProbeSpec, defaults: Defaults) -> Probe:
    retry = spec.retry or defaults.retry
    body = spec.expect.body
    return Probe(
        probe_id=spec.id,
        target=spec.target,
        method=spec.method,
        auth=spec.auth,
        expected_status=frozenset(spec.expect.status),
        expected_body=None
        if body is None
        else BodyPredicate(
            contains=body.contains,
            pattern=body.pattern,
            json_keys=tuple(body.json_keys),
            json_equals=dict(body.json_equals),
        ),
        timeout=spec.timeout or defaults.timeout,
        retry=RetryPolicy(
            max_attempts=retry.max_attempts,
            backoff_base=retry.backoff_base,
            backoff_cap=retry.backoff_cap,
        ),
        optional=spec.optional,
        headers=dict(spec.headers),
        body=spec.body,
        creates_artifact=spec.creates_artifact,
    )


def _service(spec: CheckSpec, defaults: Defaults) -> ServiceCheck:
    return ServiceCheck(
        service_name=spec.name,
        probes=tuple(_probe(p, defaults) for p in spec.probes),
        depends_on=frozenset(spec.depends_on),
        base_url=spec.base_url,
        optional=spec.optional,
    )


def _gateway(spec: GatewayCheckSpec, defaults: Defaults) -> GatewayCheck:
    return GatewayCheck(
        service_name=spec.name,
        probes=tuple(_probe(p, defaults) for p in spec.probes),
        depends_on=frozenset(spec.depends_on),
        base_url=spec.base_url,
        optional=spec.optional,
        routes_to=frozenset(spec.routes_to),
    )


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error["loc"])
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)
