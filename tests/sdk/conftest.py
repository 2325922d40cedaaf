"""Shared fixtures for SDK tests."""

import base64
import json
from typing import Any

import httpx
import pytest

from imagegen.sdk.client import GenerationClient
from imagegen.sdk.models import FetchedImage
from imagegen.sdk.poller import PollOptions

# 1x1 transparent PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00" + b"\x00" * 32


def sse(*payloads: Any, done: bool = True) -> bytes:
    """Build an SSE body from payload objects (or raw strings)."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def job(job_id: str = "job-1", status: str = "running", progress: int = 0, **extra: Any) -> dict[str, Any]:
    return {"ok": True, "job": {"id": job_id, "status": status, "progress": progress, **extra}}


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def png_b64() -> str:
    return base64.b64encode(PNG_BYTES).decode("ascii")


@pytest.fixture
def fast_poll() -> PollOptions:
    """Poll options without any real waiting."""
    return PollOptions(interval=0, initial_delay=0, max_attempts=20, not_found_tolerance=5)


@pytest.fixture
def fetch_jpeg():
    """Fake image fetcher that records requested URLs."""
    calls: list[str] = []

    async def fetch(url: str) -> FetchedImage:
        calls.append(url)
        return FetchedImage(JPEG_BYTES, "image/jpeg")

    fetch.calls = calls
    return fetch


@pytest.fixture
def mock_transport_client():
    """Build a GenerationClient whose HTTP goes to ``handler``."""

    def build(handler, **kwargs: Any) -> GenerationClient:
        return GenerationClient(
            "https://studio.example.com",
            api_key="sk-test-secret-key",
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    return build


@pytest.fixture
def make_sse():
    return sse


@pytest.fixture
def make_job():
    return job
