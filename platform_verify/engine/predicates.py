"""Response body predicates for probes.

A ``BodyPredicate`` bundles the optional assertions a probe may make about
a response body.  All configured assertions must hold; the first failing
one is reported.

Supported assertions:
- ``contains``: substring that must appear in the body
- ``pattern``: regular expression that must match somewhere in the body
- ``json_keys``: dotted paths that must exist in the JSON body
- ``json_equals``: dotted path -> expected value in the JSON body
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

_MISSING = object()


@dataclass(slots=True, frozen=True)
class PredicateResult:
    """Outcome of evaluating a body predicate."""

    passed: bool
    reason: str = ""


def lookup_path(document: Any, path: str) -> Any:
    """Resolve a dotted path (``a.b.0.c``) inside parsed JSON.

    Returns the module-level ``_MISSING`` sentinel when any segment is absent.
    """
    current = document
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return _MISSING
            current = current[idx]
        else:
            return _MISSING
    return current


@dataclass(slots=True, frozen=True)
class BodyPredicate:
    """Assertions over a response body."""

    contains: str | None = None
    pattern: str | None = None
    json_keys: tuple[str, ...] = ()
    json_equals: Mapping[str, Any] = field(default_factory=dict)
    _regex: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.pattern is None:
            return
        try:
            regex = re.compile(self.pattern)
        except re.error as exc:
            raise ValueError(f"invalid body pattern {self.pattern!r}: {exc}") from exc
        object.__setattr__(self, "_regex", regex)

    @property
    def needs_json(self) -> bool:
        return bool(self.json_keys or self.json_equals)

    def evaluate(self, body: str) -> PredicateResult:
        if self.contains is not None and self.contains not in body:
            return PredicateResult(False, f"body does not contain {self.contains!r}")

        if self._regex is not None and self._regex.search(body) is None:
            return PredicateResult(False, f"body does not match /{self.pattern}/")

        if not self.needs_json:
            return PredicateResult(True)

        try:
            document = json.loads(body)
        except ValueError as exc:
            return PredicateResult(False, f"body is not valid JSON: {exc}")

        for key in self.json_keys:
            if lookup_path(document, key) is _MISSING:
                return PredicateResult(False, f"JSON body missing {key!r}")

        for key, expected in self.json_equals.items():
            actual = lookup_path(document, key)
            if actual is _MISSING:
                return PredicateResult(False, f"JSON body missing {key!r}")
            if actual != expected:
                return PredicateResult(
                    False, f"JSON {key!r} is {actual!r}, expected {expected!r}"
                )

        return PredicateResult(True)
