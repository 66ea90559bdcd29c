"""Unit tests for artifact tagging and bounded-lifetime cleanup."""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from platform_verify.engine.lifecycle import (
    Artifact,
    ArtifactLifecycleManager,
    ArtifactStore,
    DirectoryArtifactStore,
    HttpDeleter,
    InMemoryArtifactStore,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FlakyDeleter:
    """Fails the first ``failures`` deletions, then succeeds."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.deleted: list[str] = []

    async def delete(self, artifact: Artifact) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise OSError("resource busy")
        self.deleted.append(artifact.locator)


def _artifact(run_id: str, age: float = 0.0, locator: str = "x") -> Artifact:
    return Artifact(
        run_id=run_id, kind="mock", locator=locator, created_at=NOW - timedelta(seconds=age)
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


def test_stores_satisfy_protocol(tmp_path):
    assert isinstance(InMemoryArtifactStore(), ArtifactStore)
    assert isinstance(DirectoryArtifactStore(tmp_path), ArtifactStore)


def test_artifact_expiry_and_serialisation():
    artifact = _artifact("run-1", age=10)
    assert artifact.expired(10, NOW)
    assert not artifact.expired(11, NOW)
    assert Artifact.from_dict(artifact.to_dict()) == artifact


@pytest.mark.asyncio
async def test_directory_store_persists_tags(tmp_path):
    store = DirectoryArtifactStore(tmp_path)
    artifact = _artifact("run-1")
    await store.add(artifact)

    manifest = json.loads((tmp_path / "run-1" / "artifacts.json").read_text())
    assert manifest["run_id"] == "run-1"
    assert manifest["artifacts"][0]["created_at"] == artifact.created_at.isoformat()

    # a second store (another process) sees the same tags
    other = DirectoryArtifactStore(tmp_path)
    assert await other.list_for_run("run-1") == [artifact]
    assert await other.list_all() == [artifact]

    await other.remove(artifact)
    assert not (tmp_path / "run-1").exists()


@pytest.mark.asyncio
async def test_directory_store_retained_flag(tmp_path):
    store = DirectoryArtifactStore(tmp_path)
    await store.set_retained("run-1", True)
    assert await DirectoryArtifactStore(tmp_path).retained_runs() == {"run-1"}
    await store.set_retained("run-1", False)
    assert await store.retained_runs() == set()


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cleanup_now_deletes_run_artifacts_only(fake_sleep):
    store = InMemoryArtifactStore()
    deleter = FlakyDeleter(failures=0)
    manager = ArtifactLifecycleManager(store, deleters={"mock": deleter}, sleep=fake_sleep)
    await store.add(_artifact("run-1", locator="a"))
    await store.add(_artifact("run-1", locator="b"))
    await store.add(_artifact("run-2", locator="c"))

    assert await manager.cleanup_now("run-1") == 2
    assert sorted(deleter.deleted) == ["a", "b"]
    assert [a.locator for a in await store.list_all()] == ["c"]


@pytest.mark.asyncio
async def test_failed_delete_retried_within_grace(fake_sleep):
    store = InMemoryArtifactStore()
    deleter = FlakyDeleter(failures=2)
    manager = ArtifactLifecycleManager(
        store, deleters={"mock": deleter}, grace_window=5.0, sleep=fake_sleep
    )
    await store.add(_artifact("run-1"))

    assert await manager.cleanup_now("run-1") == 1
    assert fake_sleep.delays == [0.5, 1.0]
    assert await store.list_all() == []


@pytest.mark.asyncio
async def test_delete_gives_up_after_grace(fake_sleep):
    store = InMemoryArtifactStore()
    manager = ArtifactLifecycleManager(
        store, deleters={"mock": FlakyDeleter(failures=99)}, grace_window=0.0, sleep=fake_sleep
    )
    await store.add(_artifact("run-1"))
    assert await manager.cleanup_now("run-1") == 0
    assert len(await store.list_all()) == 1


@pytest.mark.asyncio
async def test_unknown_kind_is_not_deleted(fake_sleep):
    store = InMemoryArtifactStore()
    manager = ArtifactLifecycleManager(store, grace_window=0.0, sleep=fake_sleep)
    await store.add(_artifact("run-1"))
    assert await manager.cleanup_now("run-1") == 0


@pytest.mark.asyncio
async def test_http_deleter_treats_missing_as_deleted():
    statuses = {"http://gw/bucket/1": 204, "http://gw/bucket/2": 404, "http://gw/bucket/3": 500}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        return httpx.Response(statuses[str(request.url)])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = InMemoryArtifactStore()
        manager = ArtifactLifecycleManager(
            store, deleters={"http": HttpDeleter(client)}, grace_window=0.0
        )
        for locator in statuses:
            await manager.record_resource("run-1", locator)
        assert await manager.cleanup_now("run-1") == 2
        [left] = await store.list_all()
        assert left.locator == "http://gw/bucket/3"


@pytest.mark.asyncio
async def test_evidence_files_and_run_dir_removed(tmp_path):
    store = DirectoryArtifactStore(tmp_path)
    manager = ArtifactLifecycleManager(store, evidence_dir=tmp_path)
    artifact = await manager.record_evidence("run-1", "gateway/auth health", "outcome: AuthError\n")
    assert artifact is not None
    path = tmp_path / "run-1" / "evidence" / "gateway_auth_health.txt"
    assert path.read_text() == "outcome: AuthError\n"

    assert await manager.cleanup_now("run-1") == 1
    assert not (tmp_path / "run-1").exists()


@pytest.mark.asyncio
async def test_record_evidence_disabled_without_directory():
    manager = ArtifactLifecycleManager(InMemoryArtifactStore())
    assert await manager.record_evidence("run-1", "p", "text") is None


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cleanup_happens_between_ttl_and_grace(tmp_path):
    store = InMemoryArtifactStore()
    manager = ArtifactLifecycleManager(store, grace_window=0.5, evidence_dir=tmp_path)
    await manager.record_evidence("run-1", "db-port", "evidence")
    path = tmp_path / "run-1" / "evidence" / "db-port.txt"

    started = time.monotonic()
    manager.schedule_cleanup("run-1", ttl=0.2)
    await asyncio.sleep(0.05)
    assert path.exists()
    assert manager.is_pending("run-1")

    await manager.wait_idle()
    elapsed = time.monotonic() - started
    assert not path.exists()
    assert 0.2 <= elapsed <= 0.2 + 0.5 + 0.5
    assert not manager.is_pending("run-1")


@pytest.mark.asyncio
async def test_retained_failed_run_waits_for_ack(fake_sleep):
    store = InMemoryArtifactStore()
    deleter = FlakyDeleter(failures=0)
    manager = ArtifactLifecycleManager(
        store, deleters={"mock": deleter}, retain_on_failure=True, sleep=fake_sleep
    )
    await store.add(_artifact("run-1"))

    manager.schedule_cleanup("run-1", ttl=0, failed=True)
    for _ in range(5):
        await asyncio.sleep(0)
    await manager.wait_idle()
    assert manager.is_pending("run-1")
    assert await store.retained_runs() == {"run-1"}
    assert deleter.deleted == []

    manager.acknowledge("run-1")
    await manager.wait_idle()
    assert deleter.deleted == ["x"]
    assert await store.retained_runs() == set()


@pytest.mark.asyncio
async def test_passed_run_not_retained(fake_sleep):
    store = InMemoryArtifactStore()
    deleter = FlakyDeleter(failures=0)
    manager = ArtifactLifecycleManager(
        store, deleters={"mock": deleter}, retain_on_failure=True, sleep=fake_sleep
    )
    await store.add(_artifact("run-1"))
    manager.schedule_cleanup("run-1", ttl=0, failed=False)
    await manager.wait_idle()
    assert deleter.deleted == ["x"]


@pytest.mark.asyncio
async def test_retain_persists_flag_before_task_runs(tmp_path):
    store = DirectoryArtifactStore(tmp_path)
    manager = ArtifactLifecycleManager(store, retain_on_failure=True)
    await manager.retain("run-1")
    assert await DirectoryArtifactStore(tmp_path).retained_runs() == {"run-1"}


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_cleanup(fake_sleep):
    store = InMemoryArtifactStore()
    manager = ArtifactLifecycleManager(store, deleters={"mock": FlakyDeleter(0)})
    await store.add(_artifact("run-1"))
    manager.schedule_cleanup("run-1", ttl=3600)
    await manager.shutdown()
    assert not manager.is_pending("run-1")
    # tags remain for a later sweep
    assert len(await store.list_all()) == 1


def test_negative_ttl_rejected():
    manager = ArtifactLifecycleManager(InMemoryArtifactStore())
    with pytest.raises(ValueError):
        manager.schedule_cleanup("run-1", ttl=-1)


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sweep_removes_expired_unretained_artifacts(fake_sleep):
    store = InMemoryArtifactStore()
    deleter = FlakyDeleter(failures=0)
    manager = ArtifactLifecycleManager(store, deleters={"mock": deleter}, sleep=fake_sleep)
    await store.add(_artifact("old", age=7200, locator="old"))
    await store.add(_artifact("fresh", age=10, locator="fresh"))
    await store.add(_artifact("kept", age=7200, locator="kept"))
    await store.set_retained("kept", True)

    assert await manager.sweep(ttl=3600, now=NOW) == 1
    assert deleter.deleted == ["old"]
    assert sorted(a.locator for a in await store.list_all()) == ["fresh", "kept"]
