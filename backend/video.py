"""
Derivation workers: turn a source blob into streaming artifacts.

Key public functions:
  download_blob(did, cid)                 — fetch the source blob to a scratch file
  derive_playlist(entry)                  — FFmpeg → playlist.m3u8 + segmentN.ts
  derive_thumbnail(entry)                 — FFmpeg → thumbnail.jpg (one frame)
  ensure_derived(store, entry, worker)    — single-flight gate around a worker
"""

import asyncio
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

import net
from artifacts import ArtifactEntry, ArtifactKind, ArtifactStore
from errors import DerivationError, DerivationPending

# ---------------------------------------------------------------------------
# Configuration (environment variables)
# ---------------------------------------------------------------------------
APPVIEW_URL: str = os.getenv("APPVIEW_URL", "").rstrip("/")
TEMP_DIR: str = os.getenv("TEMP_DIR", "/tmp/vidrelay")
FFMPEG_BIN: str = os.getenv("FFMPEG_BIN", "ffmpeg")
FFMPEG_TIMEOUT: float = float(os.getenv("FFMPEG_TIMEOUT", "600"))
HLS_SEGMENT_SECONDS: int = int(os.getenv("HLS_SEGMENT_SECONDS", "10"))
THUMBNAIL_OFFSET: str = "00:00:01.000"
THUMBNAIL_WIDTH: int = int(os.getenv("THUMBNAIL_WIDTH", "480"))
DERIVATION_JOIN_WAIT: float = float(os.getenv("DERIVATION_JOIN_WAIT", "5"))

DOWNLOAD_CHUNK_SIZE = 1 << 16


# ---------------------------------------------------------------------------
# Low-level subprocess helper
# ---------------------------------------------------------------------------

def _run_sync(*args: str, timeout: float = FFMPEG_TIMEOUT) -> Tuple[int, str]:
    """
    Run an external command synchronously and return (exit code, combined output).

    The process is killed once *timeout* seconds have passed; that is
    reported as a DerivationError rather than an exit code.
    """
    try:
        result = subprocess.run(
            list(args),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        output = (exc.output or b"").decode(errors="replace")
        raise DerivationError(
            f"{args[0]} timed out after {timeout:.0f}s, output: {output}"
        ) from exc
    except OSError as exc:
        raise DerivationError(f"could not start {args[0]}: {exc}") from exc
    return result.returncode, result.stdout.decode(errors="replace")


async def _run(*args: str) -> Tuple[int, str]:
    """Run an external command in a thread pool (non-blocking, cross-platform)."""
    return await asyncio.to_thread(_run_sync, *args, timeout=FFMPEG_TIMEOUT)


async def run_ffmpeg(args: List[str], expected: Path) -> None:
    """Run FFmpeg; success means exit 0 *and* *expected* exists afterwards."""
    code, output = await _run(FFMPEG_BIN, *args)
    if code != 0:
        raise DerivationError(f"ffmpeg error: exit status {code}, output: {output}")
    if not expected.is_file():
        raise DerivationError(f"ffmpeg produced no {expected.name}, output: {output}")


# ---------------------------------------------------------------------------
# Source download
# ---------------------------------------------------------------------------

def blob_url(did: str, cid: str) -> str:
    return f"{APPVIEW_URL}/blob/{did}/{cid}"


async def download_blob(did: str, cid: str) -> Path:
    """
    Stream the source blob into a scratch file and return its path.
    The caller owns the file and must delete it.
    """
    Path(TEMP_DIR).mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix="blob_", dir=TEMP_DIR)
    os.close(fd)
    scratch = Path(name)

    try:
        async with net.make_client() as client:
            async with client.stream("GET", blob_url(did, cid)) as res:
                if res.status_code != 200:
                    raise DerivationError(f"failed to download blob: HTTP {res.status_code}")
                with scratch.open("wb") as fh:
                    async for chunk in res.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
    except httpx.HTTPError as exc:
        scratch.unlink(missing_ok=True)
        raise DerivationError(f"failed to download blob: {exc!r}") from exc
    except BaseException:
        scratch.unlink(missing_ok=True)
        raise

    return scratch


def _clear_directory(directory: Path) -> None:
    """Remove leftovers of an earlier failed run so a retry starts clean."""
    directory.mkdir(parents=True, exist_ok=True)
    for child in directory.iterdir():
        if child.is_file():
            child.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------

async def derive_playlist(entry: ArtifactEntry) -> None:
    """Download the source and segment it into an HLS playlist."""
    did, cid = entry.key.did, entry.key.cid
    out_dir = entry.directory
    await asyncio.to_thread(_clear_directory, out_dir)

    source = await download_blob(did, cid)
    try:
        print(f"[Derive] HLS {did}/{cid} from {source}")
        await run_ffmpeg(
            [
                "-i", str(source),
                "-profile:v", "baseline",
                "-level", "3.0",
                "-start_number", "0",
                "-hls_time", str(HLS_SEGMENT_SECONDS),
                "-hls_list_size", "0",
                "-f", "hls",
                "-hls_segment_filename", str(out_dir / "segment%d.ts"),
                str(entry.output_path),
            ],
            entry.output_path,
        )
        print(f"[Derive] Converted {cid} to HLS")
    finally:
        source.unlink(missing_ok=True)


async def derive_thumbnail(entry: ArtifactEntry) -> None:
    """Download the source and grab one frame, one second in."""
    did, cid = entry.key.did, entry.key.cid
    await asyncio.to_thread(_clear_directory, entry.directory)

    source = await download_blob(did, cid)
    try:
        await run_ffmpeg(
            [
                "-i", str(source),
                "-ss", THUMBNAIL_OFFSET,
                "-vframes", "1",
                "-vf", f"scale={THUMBNAIL_WIDTH}:-1",
                "-y",
                str(entry.output_path),
            ],
            entry.output_path,
        )
        print(f"[Derive] Thumbnail ready for {did}/{cid}")
    finally:
        source.unlink(missing_ok=True)


Worker = Callable[[ArtifactEntry], Awaitable[None]]

WORKERS: Dict[ArtifactKind, Worker] = {
    ArtifactKind.PLAYLIST: derive_playlist,
    ArtifactKind.THUMBNAIL: derive_thumbnail,
}


# ---------------------------------------------------------------------------
# Single-flight orchestration
# ---------------------------------------------------------------------------

async def ensure_derived(
    store: ArtifactStore,
    entry: ArtifactEntry,
    worker: Optional[Worker] = None,
    join_wait: Optional[float] = None,
) -> None:
    """
    Make sure *entry* holds a finished artifact.

    The caller that wins the gate runs the worker and waits for it. Callers
    that find a derivation already running wait at most *join_wait* seconds
    and then get DerivationPending. A recorded failure is re-raised as-is;
    it sticks until the sweeper evicts the entry.
    """
    if entry.is_ready():
        return
    if entry.error is not None and not entry.deriving:
        raise entry.error

    worker = worker or WORKERS[entry.key.kind]
    join_wait = DERIVATION_JOIN_WAIT if join_wait is None else join_wait

    if await store.mark_derivation_start(entry):
        error: Optional[DerivationError] = None
        try:
            await worker(entry)
        except DerivationError as exc:
            error = exc
        except Exception as exc:
            error = DerivationError(f"derivation failed: {exc!r}")
        finally:
            await store.mark_derivation_end(entry, error)
        if error is not None:
            print(f"[Derive] {entry.key.kind.value} {entry.key.did}/{entry.key.cid} failed: {error}")
            raise error
        return

    if not await store.wait_for_derivation(entry, join_wait):
        raise DerivationPending(
            f"{entry.key.kind.value} for {entry.key.cid} is still being generated"
        )
    if entry.error is not None:
        raise entry.error
    if not entry.is_ready():
        raise DerivationError(f"{entry.output_path.name} is missing after derivation")
