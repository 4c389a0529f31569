"""
Background cleanup task.

Runs every CLEANUP_INTERVAL seconds and
  - evicts derived artifacts idle for longer than ARTIFACT_TTL, deleting
    their temp directories, and
  - forgets finished upload jobs older than JOB_RETENTION.
This keeps the ephemeral filesystem and the job table from growing forever.
"""

import asyncio
import os

from artifacts import ArtifactStore
from jobs import sweep_jobs

CLEANUP_INTERVAL: float = float(os.getenv("CLEANUP_INTERVAL", str(5 * 60)))   # run every 5 minutes
ARTIFACT_TTL: float = float(os.getenv("ARTIFACT_TTL", str(30 * 60)))         # evict after 30 idle minutes
JOB_RETENTION: float = float(os.getenv("JOB_RETENTION", str(60 * 60)))       # keep finished jobs 1 hour


async def sweep_once(store: ArtifactStore) -> None:
    artifacts = await store.sweep(ARTIFACT_TTL)
    jobs = sweep_jobs(JOB_RETENTION)
    if artifacts or jobs:
        print(f"[Cleanup] Evicted {artifacts} artifact(s), {jobs} job(s)")


async def cleanup_loop(store: ArtifactStore, interval: float = CLEANUP_INTERVAL) -> None:
    """Infinite loop: sleep, then sweep."""
    while True:
        try:
            await asyncio.sleep(interval)
            await sweep_once(store)
        except asyncio.CancelledError:
            # Graceful shutdown; stop the loop
            break
        except Exception as exc:
            # Log but never crash the background task
            print(f"[Cleanup] Unexpected error: {exc!r}")
