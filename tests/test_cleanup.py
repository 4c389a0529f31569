"""Tests for the background sweeper."""
import asyncio
import dataclasses
import time

import pytest

import cleanup
import jobs
from artifacts import ArtifactKey, ArtifactKind, ArtifactStore

KEY = ArtifactKey("did:plc:abc", "bafyvideo", ArtifactKind.THUMBNAIL)


@pytest.mark.asyncio
async def test_sweep_once_evicts_artifacts_and_old_jobs(store: ArtifactStore, monkeypatch) -> None:
    monkeypatch.setattr(cleanup, "ARTIFACT_TTL", -1.0)
    entry = await store.get_or_create(KEY)
    job = jobs.create_job("did:plc:abc", None, None)
    jobs.fail_job(job.id, "x")
    jobs._jobs[job.id] = dataclasses.replace(
        jobs._jobs[job.id], finished_at=time.time() - cleanup.JOB_RETENTION - 1
    )

    await cleanup.sweep_once(store)

    assert len(store) == 0
    assert not entry.directory.exists()
    assert jobs.get_job(job.id) is None


@pytest.mark.asyncio
async def test_loop_keeps_running_after_errors_and_stops_on_cancel(
    store: ArtifactStore, monkeypatch
) -> None:
    calls = []

    async def flaky_sweep(s) -> None:
        calls.append(s)
        raise OSError("disk went away")

    monkeypatch.setattr(cleanup, "sweep_once", flaky_sweep)

    task = asyncio.create_task(cleanup.cleanup_loop(store, interval=0.01))
    await asyncio.sleep(0.1)
    task.cancel()
    await task

    assert len(calls) >= 2
    assert task.done() and not task.cancelled()
