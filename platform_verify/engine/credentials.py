"""Credential resolution for authenticated probes.

Secrets reach the platform through an external synchronisation mechanism
that is eventually consistent with the deployment, so a key may legitimately
be missing for a while after rollout.  The resolver therefore retries
missing names with capped exponential backoff and only then gives up with
``CredentialUnavailable``.

Resolved values are cached for the lifetime of the resolver (one run) and
shared read-only by every probe.  ``refresh`` re-reads a single name from
the source, which the scheduler uses once when a key keeps being rejected,
to tolerate a rotation that happened mid-run.

Values are wrapped in ``pydantic.SecretStr`` so they never render in logs,
reprs or reports.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import SecretStr

from platform_verify.engine.exceptions import CredentialUnavailable

log = logging.getLogger(__name__)

__all__ = [
    "ChainCredentialSource",
    "Credential",
    "CredentialResolver",
    "CredentialSource",
    "EnvCredentialSource",
    "FileCredentialSource",
    "StaticCredentialSource",
]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@runtime_checkable
class CredentialSource(Protocol):
    """External secret store interface.

    ``fetch`` returns the value, or ``None`` if it has not propagated yet.
    Retrying is the resolver's job, not the source's.
    """

    async def fetch(self, name: str) -> str | None:
        ...


class StaticCredentialSource:
    """In-memory source, for embedding and tests."""

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self.values: dict[str, str] = dict(values or {})

    async def fetch(self, name: str) -> str | None:
        return self.values.get(name) or None


class EnvCredentialSource:
    """Reads credentials from environment variables.

    By default credential ``anon_key`` is read from ``ANON_KEY``; explicit
    ``mapping`` entries override the derived variable name.
    """

    def __init__(
        self,
        mapping: Mapping[str, str] | None = None,
        *,
        prefix: str = "",
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.mapping = dict(mapping or {})
        self.prefix = prefix
        self._environ = environ

    def variable_for(self, name: str) -> str:
        return self.mapping.get(name, f"{self.prefix}{name.upper()}")

    async def fetch(self, name: str) -> str | None:
        environ = os.environ if self._environ is None else self._environ
        return environ.get(self.variable_for(name)) or None


class FileCredentialSource:
    """Reads credentials from a mounted secret directory (one file per key)."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    async def fetch(self, name: str) -> str | None:
        return await asyncio.to_thread(self._read, self.directory / name)

    @staticmethod
    def _read(path: Path) -> str | None:
        if not path.is_file():
            return None
        value = path.read_text(encoding="utf-8").strip()
        return value or None


class ChainCredentialSource:
    """Tries each source in order; the first non-empty value wins."""

    def __init__(self, *sources: CredentialSource) -> None:
        self.sources = sources

    async def fetch(self, name: str) -> str | None:
        for source in self.sources:
            value = await source.fetch(name)
            if value:
                return value
        return None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Credential:
    """A resolved secret scoped to one run."""

    name: str
    value: SecretStr
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def reveal(self) -> str:
        return self.value.get_secret_value()


class CredentialResolver:
    """Fetches and caches credentials for the duration of a run.

    Parameters
    ----------
    source : CredentialSource
        Where secrets are read from.
    attempts : int
        Fetch attempts per missing name before ``CredentialUnavailable``.
    backoff_base, backoff_cap : float
        Capped exponential backoff (seconds) between attempts.
    """

    def __init__(
        self,
        source: CredentialSource,
        *,
        attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_cap: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.source = source
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._cache: dict[str, Credential] = {}
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def get(self, name: str) -> Credential | None:
        return self._cache.get(name)

    @property
    def resolved(self) -> frozenset[str]:
        return frozenset(self._cache)

    async def resolve(self, names: Iterable[str]) -> dict[str, Credential]:
        """Resolve every name, retrying those that have not propagated yet.

        Raises
        ------
        CredentialUnavailable
            If any name is still missing after the last attempt.
        """
        wanted = set(names)
        async with self._lock:
            missing = sorted(n for n in wanted if n not in self._cache)
            attempt = 1
            while missing:
                for name in missing:
                    value = await self._fetch(name)
                    if value:
                        self._cache[name] = Credential(name=name, value=SecretStr(value))
                missing = [n for n in missing if n not in self._cache]
                if not missing:
                    break
                if attempt >= self.attempts:
                    log.warning(
                        "Credentials still unavailable after %d attempts: %s",
                        attempt,
                        ", ".join(missing),
                    )
                    raise CredentialUnavailable(missing)
                delay = min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 1)))
                log.info(
                    "Waiting %.1fs for credential propagation (%s), attempt %d/%d",
                    delay,
                    ", ".join(missing),
                    attempt,
                    self.attempts,
                )
                await self._sleep(delay)
                attempt += 1

            return {n: self._cache[n] for n in wanted}

    async def refresh(self, name: str) -> Credential | None:
        """Re-read ``name`` from the source, replacing the cached value.

        Returns the new credential, or ``None`` if the source no longer has
        it (the previous value is kept in that case).
        """
        async with self._lock:
            self.refresh_count += 1
            value = await self._fetch(name)
            if not value:
                log.warning("Credential %s missing on refresh", name)
                return None
            previous = self._cache.get(name)
            credential = Credential(name=name, value=SecretStr(value))
            self._cache[name] = credential
            if previous is not None and previous.reveal() != value:
                log.info("Credential %s rotated since first resolution", name)
            return credential

    async def _fetch(self, name: str) -> str | None:
        # an unreadable secret counts as not yet propagated
        try:
            return await self.source.fetch(name)
        except OSError as e:
            log.warning("Could not read credential %s: %s", name, e)
            return None

    def clear(self) -> None:
        """Drop every cached value (run teardown)."""
        self._cache.clear()
