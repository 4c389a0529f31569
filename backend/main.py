"""
vidrelay FastAPI backend — a self-hosted stand-in for video.bsky.app.

Endpoints:
  POST /xrpc/app.bsky.video.uploadVideo?did=…   — accept raw video, relay it to the owner's PDS in the background
  GET  /xrpc/app.bsky.video.getJobStatus?jobId=… — poll status: processing | JOB_STATE_COMPLETED | JOB_STATE_FAILED
  GET  /xrpc/app.bsky.video.getUploadLimits     — static allowance, zero for DIDs outside ALLOWED_DIDS
  GET  /watch/{did}/{cid}/{file}                 — playlist.m3u8, segmentN.ts or thumbnail.jpg, derived on first access
  GET  /.well-known/did.json                     — did:web document for this service
"""

import asyncio
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, PlainTextResponse
from pydantic import BaseModel
from starlette.types import Receive, Scope, Send

# Load .env file in development (no-op when vars are already set)
load_dotenv()

from artifacts import ArtifactEntry, ArtifactKey, ArtifactKind, ArtifactStore
from auth import SERVER_HOSTNAME, SERVICE_DID, get_authenticated_did
from cleanup import cleanup_loop
from errors import DerivationError, DerivationPending
from identity import DIDDocument, Service
from jobs import Job, JobState, create_job, get_job
from upload import process_upload
from video import ensure_derived

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
TEMP_DIR: str = os.getenv("TEMP_DIR", "/tmp/vidrelay")
APPVIEW_URL: str = os.getenv("APPVIEW_URL", "")
FRONTEND_URL: str = os.getenv("FRONTEND_URL", "")
ALLOWED_DIDS: List[str] = [
    did.strip() for did in os.getenv("ALLOWED_DIDS", "").split(",") if did.strip()
]

DAILY_VIDEO_ALLOWANCE = 2000
DAILY_BYTES_ALLOWANCE = 10_000_000
RETRY_AFTER_SECONDS = 2

# Anything else under /watch is rejected before touching the filesystem
WATCH_FILE_RE = re.compile(r"(playlist\.m3u8|segment\d+\.ts|thumbnail\.jpg)")
DID_RE = re.compile(r"did:[a-z]+:[A-Za-z0-9._:%-]+")
CID_RE = re.compile(r"[A-Za-z0-9]+")

MEDIA_TYPES: Dict[str, str] = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".jpg": "image/jpeg",
}

artifact_store = ArtifactStore(str(Path(TEMP_DIR) / "artifacts"))

# Running upload workers; holds a reference until each one finishes
_upload_tasks: Set["asyncio.Task[None]"] = set()


# ---------------------------------------------------------------------------
# App lifespan: create temp dir + start cleanup background task
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    Path(TEMP_DIR).mkdir(parents=True, exist_ok=True)
    if not APPVIEW_URL:
        print("[WARNING] APPVIEW_URL is not set; /watch cannot download source blobs")
    if get_authenticated_did not in app.dependency_overrides:
        print(
            "[WARNING] No service-token verifier installed; token signatures are NOT checked "
            "and ALLOWED_DIDS can be bypassed with a forged issuer"
        )

    cleanup_task = asyncio.create_task(cleanup_loop(artifact_store))

    yield  # application runs

    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass


app = FastAPI(title="vidrelay", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in (APPVIEW_URL, FRONTEND_URL) if origin],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH"],
    allow_headers=[
        "Origin",
        "Authorization",
        "atproto-accept-labelers",
        "content-type",
        "content-length",
    ],
    expose_headers=["Content-Length", "Content-Type"],
    max_age=12 * 60 * 60,
)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class JobStatus(BaseModel):
    jobId: str
    did: str
    state: str
    progress: int
    message: str
    blob: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            jobId=job.id,
            did=job.did,
            state=job.state.value,
            progress=job.progress,
            message=job.message(),
            blob=job.blob,
            error=job.error if job.state is JobState.FAILED else None,
        )


class JobStatusOutput(BaseModel):
    jobStatus: JobStatus


class UploadLimits(BaseModel):
    canUpload: bool
    remainingDailyVideos: int
    remainingDailyBytes: int


def _did_allowed(did: str) -> bool:
    return not ALLOWED_DIDS or did in ALLOWED_DIDS


class LeasedFileResponse(FileResponse):
    """FileResponse that holds a serve lease on its artifact entry until sending ends, however it ends."""

    def __init__(self, store: ArtifactStore, entry: ArtifactEntry, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.store = store
        self.entry = entry

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.store.release(self.entry)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/", response_class=PlainTextResponse)
async def index() -> str:
    return "vidrelay -- a reimplementation of video.bsky.app"


@app.get("/.well-known/did.json", response_model=DIDDocument, response_model_by_alias=True)
async def did_document():
    return DIDDocument(
        context=["https://www.w3.org/ns/did/v1"],
        id=SERVICE_DID,
        service=[
            Service(
                id="#bsky_video",
                type="BskyVideoService",
                serviceEndpoint=f"https://{SERVER_HOSTNAME}",
            )
        ],
    )


@app.get("/xrpc/app.bsky.video.getUploadLimits", response_model=UploadLimits)
async def get_upload_limits(did: str = Depends(get_authenticated_did)):
    if not _did_allowed(did):
        return UploadLimits(canUpload=False, remainingDailyVideos=0, remainingDailyBytes=0)
    return UploadLimits(
        canUpload=True,
        remainingDailyVideos=DAILY_VIDEO_ALLOWANCE,
        remainingDailyBytes=DAILY_BYTES_ALLOWANCE,
    )


@app.post(
    "/xrpc/app.bsky.video.uploadVideo",
    response_model=JobStatus,
    response_model_exclude_none=True,
)
async def upload_video(
    request: Request,
    did: Optional[str] = Query(default=None),
):
    """Register an upload job and relay the body to the owner's PDS in the background."""
    if not did:
        raise HTTPException(status_code=400, detail="did is missing")
    if not _did_allowed(did):
        raise HTTPException(status_code=403, detail="DID not allowed")

    body = await request.body()
    job = create_job(
        did,
        token=request.headers.get("authorization"),
        content_type=request.headers.get("content-type"),
    )
    # Detached from the request so a dropped client cannot strand the job
    task = asyncio.create_task(process_upload(job, body))
    _upload_tasks.add(task)
    task.add_done_callback(_upload_tasks.discard)
    return JobStatus.from_job(job)


@app.get(
    "/xrpc/app.bsky.video.getJobStatus",
    response_model=JobStatusOutput,
    response_model_exclude_none=True,
)
async def get_job_status(
    jobId: Optional[str] = Query(default=None),
    _: str = Depends(get_authenticated_did),
):
    """Poll the status of a job."""
    job = get_job(jobId) if jobId else None
    if job is None:
        raise HTTPException(status_code=400, detail="invalid job id")
    return JobStatusOutput(jobStatus=JobStatus.from_job(job))


@app.get("/watch/{did}/{cid}/{filepath:path}")
async def watch(did: str, cid: str, filepath: str):
    """Serve a playlist, segment or thumbnail, deriving it on first access."""
    if not DID_RE.fullmatch(did):
        raise HTTPException(status_code=400, detail="did is missing or invalid")
    if not CID_RE.fullmatch(cid):
        raise HTTPException(status_code=400, detail="cid is missing or invalid")
    if not WATCH_FILE_RE.fullmatch(filepath):
        raise HTTPException(status_code=400, detail="invalid file request")

    kind = ArtifactKind.THUMBNAIL if filepath == "thumbnail.jpg" else ArtifactKind.PLAYLIST
    entry = await artifact_store.get_or_create(ArtifactKey(did, cid, kind))

    try:
        await ensure_derived(artifact_store, entry)
    except DerivationPending as exc:
        raise HTTPException(
            status_code=503,
            detail=str(exc),
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        ) from exc
    except DerivationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    file_path = entry.directory / filepath
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="file not found")

    headers = {"Access-Control-Allow-Origin": "*"}
    if kind is ArtifactKind.THUMBNAIL:
        headers["Cache-Control"] = "public, max-age=31536000"

    await artifact_store.lease(entry)
    return LeasedFileResponse(
        artifact_store,
        entry,
        str(file_path),
        media_type=MEDIA_TYPES[file_path.suffix],
        headers=headers,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
