"""
Outbound HTTP client factory.

All calls to the PLC directory, PDS instances and the content origin go
through clients built here so timeouts are applied everywhere.
"""

import os
from typing import Optional

import httpx

HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "30"))
RELAY_TIMEOUT: float = float(os.getenv("RELAY_TIMEOUT", "300"))

# Swapped for an httpx.MockTransport in tests
TRANSPORT: Optional[httpx.AsyncBaseTransport] = None


def make_client(timeout: float = HTTP_TIMEOUT) -> httpx.AsyncClient:
    """Return a fresh AsyncClient; use it as an async context manager."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=True,
        transport=TRANSPORT,
    )
