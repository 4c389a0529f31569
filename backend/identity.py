"""
DID resolution.

Only the piece of the DID document we need is read: the service entry
that points at the user's PDS (Personal Data Server), where their blobs
live.

  did:plc:...  → {ATPROTO_PLC_URL}/{did}  (also used for other methods)
  did:web:host → https://host/.well-known/did.json  (%3A decodes to a port)
"""

import os
import urllib.parse
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

import net
from errors import IdentityError

PLC_URL: str = os.getenv("ATPROTO_PLC_URL", "https://plc.directory").rstrip("/")

PDS_SERVICE_ID = "#atproto_pds"
PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"


class Service(BaseModel):
    id: str
    type: str
    serviceEndpoint: str


class DIDDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    context: List[str] = Field(default_factory=list, alias="@context")
    id: str
    service: List[Service] = Field(default_factory=list)

    def pds_endpoint(self) -> Optional[str]:
        for service in self.service:
            if service.type == PDS_SERVICE_TYPE and service.id.endswith(PDS_SERVICE_ID):
                return service.serviceEndpoint.rstrip("/")
        return None


def did_document_url(did: str) -> str:
    if did.startswith("did:web:"):
        rest = did[len("did:web:"):]
        if not rest or ":" in rest:
            # Path-style did:web documents are not resolved
            raise IdentityError(f"unsupported did:web: {did}")
        host = urllib.parse.unquote(rest)
        return f"https://{host}/.well-known/did.json"
    if not did.startswith("did:"):
        raise IdentityError(f"not a DID: {did}")
    # did:plc and anything else goes to the PLC directory
    return f"{PLC_URL}/{did}"


async def fetch_did_document(did: str) -> DIDDocument:
    url = did_document_url(did)
    try:
        async with net.make_client() as client:
            res = await client.get(url)
    except httpx.HTTPError as exc:
        raise IdentityError(f"fetching user {did} failed: {exc!r}") from exc

    if res.status_code != 200:
        raise IdentityError(f"fetching user {did} failed: HTTP {res.status_code}")

    try:
        data: Dict[str, Any] = res.json()
        return DIDDocument.model_validate(data)
    except ValueError as exc:
        raise IdentityError(f"parsing DID document for {did} failed: {exc}") from exc


async def resolve_pds(did: str) -> Optional[str]:
    """
    Return the PDS base URL for *did*, or None when the document declares none.

    Raises IdentityError when the document itself cannot be fetched or parsed.
    """
    doc = await fetch_did_document(did)
    return doc.pds_endpoint()
