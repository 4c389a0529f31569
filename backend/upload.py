"""
Upload worker: relay an uploaded video to the owner's PDS.

Runs detached from the request that created the job. Its only visible
effect is moving that job through processing → completed | failed.
Exactly one relay attempt is made.
"""

from typing import Any, Dict

import httpx

import net
from errors import IdentityError, ProtocolError, TransportError, VidrelayError
from identity import resolve_pds
from jobs import Job, complete_job, fail_job, update_job

UPLOAD_BLOB_PATH = "/xrpc/com.atproto.repo.uploadBlob"


async def relay_blob(pds_url: str, body: bytes, token: str, content_type: str) -> Dict[str, Any]:
    """POST *body* to the PDS uploadBlob endpoint and return the blob ref."""
    headers = {}
    if token:
        headers["authorization"] = token
    if content_type:
        headers["content-type"] = content_type

    try:
        async with net.make_client(net.RELAY_TIMEOUT) as client:
            res = await client.post(f"{pds_url}{UPLOAD_BLOB_PATH}", content=body, headers=headers)
    except httpx.HTTPError as exc:
        raise TransportError(f"upload error {exc!r}") from exc

    if res.status_code != 200:
        raise ProtocolError(f"upload error {res.status_code} {res.reason_phrase}, {res.text}")

    try:
        blob = res.json()["blob"]
    except (ValueError, KeyError, TypeError) as exc:
        raise ProtocolError(f"failed to parse upload result: {exc!r}") from exc
    if not isinstance(blob, dict):
        raise ProtocolError("failed to parse upload result: blob is not an object")
    return blob


async def _relay(job: Job, body: bytes) -> None:
    try:
        pds_url = await resolve_pds(job.did)
    except IdentityError as exc:
        raise IdentityError(f"failed to fetch user: {exc}") from exc
    if not pds_url:
        print(f"[Job {job.id}] {job.did} declares no PDS")
        raise IdentityError("user has no PDS")

    job = update_job(job.id, progress=10)

    blob = await relay_blob(pds_url, body, job.token or "", job.content_type or "")
    print(f"[Job {job.id}] Uploaded! ref={blob.get('ref')}")
    complete_job(job.id, blob)


async def process_upload(job: Job, body: bytes) -> None:
    """Background task entry point; never raises."""
    print(f"[Job {job.id}] Processing")
    try:
        await _relay(job, body)
    except VidrelayError as exc:
        print(f"[Job {job.id}] Failed: {exc}")
        fail_job(job.id, str(exc))
    except Exception as exc:
        import traceback
        print(f"[Job {job.id}] Unexpected failure: {exc!r}")
        traceback.print_exc()
        fail_job(job.id, f"internal error: {exc!r}")
