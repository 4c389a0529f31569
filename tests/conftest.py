"""Pytest configuration and fixtures."""
import asyncio
import time
from pathlib import Path
from typing import Callable, Dict, List

import httpx
import jwt
import pytest
import pytest_asyncio

import jobs
import main
import net
import video
from artifacts import ArtifactStore


@pytest.fixture(autouse=True)
def clear_jobs():
    """Every test starts with an empty job table."""
    jobs._jobs.clear()
    yield
    jobs._jobs.clear()


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(str(tmp_path / "artifacts"))


@pytest.fixture
def mock_http(monkeypatch) -> Callable[[Callable[[httpx.Request], httpx.Response]], None]:
    """Route every outbound httpx call through *handler*."""

    def install(handler: Callable[[httpx.Request], httpx.Response]) -> None:
        monkeypatch.setattr(net, "TRANSPORT", httpx.MockTransport(handler))

    return install


class FakeFFmpeg:
    """Stands in for video._run: records calls and writes the expected output."""

    def __init__(self, exit_code: int = 0, output: str = "", delay: float = 0.0) -> None:
        self.calls: List[List[str]] = []
        self.exit_code = exit_code
        self.output = output
        self.delay = delay

    async def __call__(self, *args: str):
        self.calls.append(list(args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exit_code == 0:
            target = Path(args[-1])
            target.write_bytes(b"#EXTM3U\n" if target.suffix == ".m3u8" else b"\xff\xd8jpeg")
            if target.suffix == ".m3u8":
                (target.parent / "segment0.ts").write_bytes(b"ts-data")
        return self.exit_code, self.output


@pytest.fixture
def fake_ffmpeg(monkeypatch, tmp_path: Path) -> FakeFFmpeg:
    fake = FakeFFmpeg()
    monkeypatch.setattr(video, "_run", fake)
    monkeypatch.setattr(video, "TEMP_DIR", str(tmp_path / "scratch"))
    monkeypatch.setattr(video, "APPVIEW_URL", "https://appview.example")
    return fake


@pytest.fixture
def blob_origin(mock_http) -> Dict[str, int]:
    """Serve fake source blobs from the content origin and count downloads."""
    counts = {"downloads": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "appview.example" and request.url.path.startswith("/blob/"):
            counts["downloads"] += 1
            return httpx.Response(200, content=b"\x00\x00\x00\x18ftypmp42")
        return httpx.Response(404)

    mock_http(handler)
    return counts


@pytest_asyncio.fixture
async def client(monkeypatch, store: ArtifactStore):
    monkeypatch.setattr(main, "artifact_store", store)
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers() -> Callable[..., Dict[str, str]]:
    """Build an Authorization header carrying an (unsigned-checked) service token."""

    def build(iss: str = "did:plc:caller", aud: str = main.SERVICE_DID, ttl: int = 60) -> Dict[str, str]:
        token = jwt.encode(
            {"iss": iss, "aud": aud, "exp": int(time.time()) + ttl},
            "test-signing-key-not-verified-by-the-service",
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    return build
