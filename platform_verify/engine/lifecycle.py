"""Artifact lifecycle: tagging and bounded-lifetime cleanup of run artifacts.

Anything created solely to run the probes is an artifact: evidence files
captured for failed probes and remote resources created by probes flagged
``creates_artifact``.  Every artifact is tagged with its ``run_id`` and a
creation timestamp.

Cleanup guarantees, per run:
- nothing is deleted earlier than ``ttl`` after ``schedule_cleanup``
- everything is deleted no later than ``ttl + grace_window``
- with ``retain_on_failure`` and a failed run, deletion waits for
  ``acknowledge(run_id)`` (and still never happens before ``ttl``)

``sweep`` is the entry point for an external garbage collector (cron job,
CLI) that reclaims expired artifacts left by processes that exited.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable
from uuid import uuid4

import httpx

log = logging.getLogger(__name__)

__all__ = [
    "Artifact",
    "ArtifactDeleter",
    "ArtifactKind",
    "ArtifactLifecycleManager",
    "ArtifactStore",
    "DirectoryArtifactStore",
    "FileDeleter",
    "HttpDeleter",
    "InMemoryArtifactStore",
]

MANIFEST_NAME = "artifacts.json"


class ArtifactKind(str, Enum):  # noqa: UP042
    FILE = "file"
    HTTP = "http"


@dataclass(slots=True, frozen=True)
class Artifact:
    """A resource created for one run, tagged for later reclamation."""

    run_id: str
    kind: str
    locator: str
    artifact_id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def expired(self, ttl: float, now: datetime) -> bool:
        return now - self.created_at >= timedelta(seconds=ttl)

    def to_dict(self) -> dict[str, str]:
        return {
            "artifact_id": self.artifact_id,
            "run_id": self.run_id,
            "kind": self.kind,
            "locator": self.locator,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, str]) -> Artifact:
        return cls(
            run_id=data["run_id"],
            kind=data["kind"],
            locator=data["locator"],
            artifact_id=data["artifact_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ArtifactStore(Protocol):
    """Keeps artifact tags; does not destroy the resources themselves."""

    async def add(self, artifact: Artifact) -> None: ...

    async def list_for_run(self, run_id: str) -> list[Artifact]: ...

    async def list_all(self) -> list[Artifact]: ...

    async def remove(self, artifact: Artifact) -> None: ...

    async def set_retained(self, run_id: str, retained: bool) -> None: ...

    async def retained_runs(self) -> set[str]: ...


@runtime_checkable
class ArtifactDeleter(Protocol):
    """Destroys the resource behind an artifact of one kind."""

    async def delete(self, artifact: Artifact) -> None: ...


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class InMemoryArtifactStore:
    """Process-local artifact tags."""

    def __init__(self) -> None:
        self._artifacts: dict[str, Artifact] = {}
        self._retained: set[str] = set()
        self._lock = asyncio.Lock()

    async def add(self, artifact: Artifact) -> None:
        async with self._lock:
            self._artifacts[artifact.artifact_id] = artifact

    async def list_for_run(self, run_id: str) -> list[Artifact]:
        async with self._lock:
            return [a for a in self._artifacts.values() if a.run_id == run_id]

    async def list_all(self) -> list[Artifact]:
        async with self._lock:
            return list(self._artifacts.values())

    async def remove(self, artifact: Artifact) -> None:
        async with self._lock:
            self._artifacts.pop(artifact.artifact_id, None)

    async def set_retained(self, run_id: str, retained: bool) -> None:
        async with self._lock:
            if retained:
                self._retained.add(run_id)
            else:
                self._retained.discard(run_id)

    async def retained_runs(self) -> set[str]:
        async with self._lock:
            return set(self._retained)


class DirectoryArtifactStore:
    """Artifact tags persisted as ``<root>/<run_id>/artifacts.json``.

    The manifest survives the verifying process, so a later ``sweep`` (from
    another process) can find and reclaim the run's artifacts.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._lock = asyncio.Lock()

    def run_dir(self, run_id: str) -> Path:
        return self.root / run_id

    def _manifest_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / MANIFEST_NAME

    def _read(self, run_id: str) -> dict:
        path = self._manifest_path(run_id)
        if not path.is_file():
            return {"run_id": run_id, "retained": False, "artifacts": []}
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, run_id: str, manifest: dict) -> None:
        path = self._manifest_path(run_id)
        if not manifest["artifacts"] and not manifest["retained"]:
            if path.exists():
                path.unlink()
            run_dir = self.run_dir(run_id)
            if run_dir.is_dir() and not any(run_dir.iterdir()):
                run_dir.rmdir()
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")

    def _run_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.parent.name for p in self.root.glob(f"*/{MANIFEST_NAME}"))

    async def add(self, artifact: Artifact) -> None:
        async with self._lock:
            manifest = self._read(artifact.run_id)
            manifest["artifacts"].append(artifact.to_dict())
            self._write(artifact.run_id, manifest)

    async def list_for_run(self, run_id: str) -> list[Artifact]:
        async with self._lock:
            return [Artifact.from_dict(a) for a in self._read(run_id)["artifacts"]]

    async def list_all(self) -> list[Artifact]:
        async with self._lock:
            return [
                Artifact.from_dict(a)
                for run_id in self._run_ids()
                for a in self._read(run_id)["artifacts"]
            ]

    async def remove(self, artifact: Artifact) -> None:
        async with self._lock:
            manifest = self._read(artifact.run_id)
            manifest["artifacts"] = [
                a for a in manifest["artifacts"] if a["artifact_id"] != artifact.artifact_id
            ]
            self._write(artifact.run_id, manifest)

    async def set_retained(self, run_id: str, retained: bool) -> None:
        async with self._lock:
            manifest = self._read(run_id)
            manifest["retained"] = retained
            self._write(run_id, manifest)

    async def retained_runs(self) -> set[str]:
        async with self._lock:
            return {r for r in self._run_ids() if self._read(r).get("retained")}


# ---------------------------------------------------------------------------
# Deleters
# ---------------------------------------------------------------------------


class FileDeleter:
    """Removes a file or directory artifact; already-missing is success."""

    async def delete(self, artifact: Artifact) -> None:
        path = Path(artifact.locator)
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)


class HttpDeleter:
    """Issues ``DELETE <locator>``; 404/410 count as already deleted."""

    def __init__(self, client: httpx.AsyncClient, headers: Mapping[str, str] | None = None) -> None:
        self.client = client
        self.headers = dict(headers or {})

    async def delete(self, artifact: Artifact) -> None:
        response = await self.client.delete(artifact.locator, headers=self.headers)
        if response.status_code in (404, 410):
            return
        response.raise_for_status()


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ArtifactLifecycleManager:
    """Records run artifacts and reclaims them after their TTL.

    Parameters
    ----------
    store : ArtifactStore
        Where artifact tags are kept.
    deleters : Mapping[str, ArtifactDeleter]
        Deleter per artifact kind.  Files are handled by default.
    grace_window : float
        Seconds after ``ttl`` by which deletion must have completed.
    retain_on_failure : bool
        Keep failed runs' artifacts until ``acknowledge``.
    evidence_dir : Path | None
        Where failed-probe evidence files are written; ``None`` disables
        evidence capture.
    """

    def __init__(
        self,
        store: ArtifactStore,
        *,
        deleters: Mapping[str, ArtifactDeleter] | None = None,
        grace_window: float = 30.0,
        retain_on_failure: bool = False,
        evidence_dir: str | Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.deleters: dict[str, ArtifactDeleter] = {ArtifactKind.FILE.value: FileDeleter()}
        self.deleters.update(deleters or {})
        self.grace_window = grace_window
        self.retain_on_failure = retain_on_failure
        self.evidence_dir = None if evidence_dir is None else Path(evidence_dir)
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[int]] = {}
        self._acks: dict[str, asyncio.Event] = {}

    # -- recording -------------------------------------------------------

    async def record_evidence(self, run_id: str, probe_id: str, text: str) -> Artifact | None:
        """Write a failed probe's evidence file and tag it with ``run_id``."""
        if self.evidence_dir is None:
            return None
        path = self.evidence_dir / run_id / "evidence" / f"{_safe_name(probe_id)}.txt"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        artifact = Artifact(run_id=run_id, kind=ArtifactKind.FILE.value, locator=str(path))
        await self.store.add(artifact)
        return artifact

    async def record_resource(
        self, run_id: str, locator: str, kind: str = ArtifactKind.HTTP.value
    ) -> Artifact:
        """Tag a remote resource created by a probe."""
        artifact = Artifact(run_id=run_id, kind=kind, locator=locator)
        await self.store.add(artifact)
        log.debug("Recorded %s artifact for run %s: %s", kind, run_id, locator)
        return artifact

    # -- scheduling ------------------------------------------------------

    def schedule_cleanup(self, run_id: str, ttl: float, *, failed: bool = False) -> None:
        """Start a background task that reclaims ``run_id`` after ``ttl`` seconds.

        Must be called from a running event loop.  Returns immediately.
        """
        if ttl < 0:
            raise ValueError("ttl cannot be negative")
        if run_id in self._tasks and not self._tasks[run_id].done():
            log.debug("Cleanup for run %s already scheduled", run_id)
            return
        retain = failed and self.retain_on_failure
        if retain:
            self._acks.setdefault(run_id, asyncio.Event())
        task = asyncio.get_running_loop().create_task(
            self._cleanup_after(run_id, ttl, retain), name=f"cleanup-{run_id}"
        )
        self._tasks[run_id] = task
        log.info(
            "Scheduled artifact cleanup for run %s in %.0fs%s",
            run_id,
            ttl,
            " (retained until acknowledged)" if retain else "",
        )

    async def retain(self, run_id: str) -> None:
        """Persist the retained flag now, before any cleanup task has run.

        Lets a short-lived process exit right after a failed run without a
        later ``sweep`` reclaiming the evidence.
        """
        self._acks.setdefault(run_id, asyncio.Event())
        await self.store.set_retained(run_id, True)

    def acknowledge(self, run_id: str) -> None:
        """Release a retained failed run for deletion."""
        event = self._acks.setdefault(run_id, asyncio.Event())
        event.set()
        log.info("Run %s acknowledged; artifacts released for cleanup", run_id)

    def is_pending(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def wait_idle(self) -> None:
        """Wait for every scheduled cleanup that is not blocked on an ack."""
        waiting = [
            t for rid, t in self._tasks.items()
            if not t.done() and (rid not in self._acks or self._acks[rid].is_set())
        ]
        if waiting:
            await asyncio.gather(*waiting, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding cleanup tasks (tags stay in the store for ``sweep``)."""
        for task in self._tasks.values():
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

    async def _cleanup_after(self, run_id: str, ttl: float, retain: bool) -> int:
        if retain:
            await self.store.set_retained(run_id, True)
        await self._sleep(ttl)
        if retain:
            await self._acks[run_id].wait()
            await self.store.set_retained(run_id, False)
        return await self.cleanup_now(run_id)

    # -- deletion --------------------------------------------------------

    async def cleanup_now(self, run_id: str) -> int:
        """Delete every artifact tagged ``run_id``, retrying within the grace window.

        Returns the number of artifacts deleted.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.grace_window
        deleted = 0
        delay = 0.5
        remaining = await self.store.list_for_run(run_id)
        while remaining:
            failed: list[Artifact] = []
            for artifact in remaining:
                if await self._delete(artifact):
                    deleted += 1
                else:
                    failed.append(artifact)
            remaining = failed
            if not remaining:
                break
            left = deadline - loop.time()
            if left <= 0:
                log.error(
                    "Run %s: %d artifact(s) not deleted within grace window",
                    run_id,
                    len(remaining),
                )
                break
            await self._sleep(min(delay, left))
            delay = min(delay * 2, 5.0)

        if self.evidence_dir is not None:
            run_dir = self.evidence_dir / run_id
            if run_dir.is_dir() and not remaining:
                shutil.rmtree(run_dir / "evidence", ignore_errors=True)
                if not any(run_dir.iterdir()):
                    run_dir.rmdir()
        log.info("Run %s: deleted %d artifact(s)", run_id, deleted)
        return deleted

    async def sweep(self, ttl: float, now: datetime | None = None) -> int:
        """Delete every expired artifact whose run is not retained."""
        now = now or datetime.now(timezone.utc)
        retained = await self.store.retained_runs()
        deleted = 0
        for artifact in await self.store.list_all():
            if artifact.run_id in retained or not artifact.expired(ttl, now):
                continue
            if await self._delete(artifact):
                deleted += 1
        log.info("Sweep removed %d expired artifact(s)", deleted)
        return deleted

    async def _delete(self, artifact: Artifact) -> bool:
        deleter = self.deleters.get(artifact.kind)
        if deleter is None:
            log.error("No deleter for artifact kind %r (%s)", artifact.kind, artifact.locator)
            return False
        try:
            await deleter.delete(artifact)
        except (OSError, httpx.HTTPError) as e:
            log.warning("Failed to delete %s artifact %s: %s", artifact.kind, artifact.locator, e)
            return False
        await self.store.remove(artifact)
        return True


def _safe_name(value: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in value)
