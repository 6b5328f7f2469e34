from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from banana_proxy.generation import GenerationClient, GenerationRequest
from banana_proxy.main import app, get_client_factory

RESULT_URLS = [
    "https://replicate.delivery/xezq/out-0.jpg",
    "https://replicate.delivery/xezq/out-1.jpg",
]
REFERENCE_BYTES = b"\x89PNG\r\n\x1a\nreference"


class FakeGenerationClient(GenerationClient):
    strategy = "fake"

    def __init__(self, output: Any = None, error: Exception | None = None):
        super().__init__(model="google/nano-banana-pro", generation_timeout_s=5)
        self.output = list(RESULT_URLS) if output is None else output
        self.error = error
        self.requests: list[GenerationRequest] = []

    async def _run(self, request: GenerationRequest) -> Any:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.output


@pytest.fixture
def reference_image(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "reference.png"
    path.write_bytes(REFERENCE_BYTES)
    monkeypatch.setenv("REFERENCE_IMAGE_PATH", str(path))
    return path


@pytest.fixture
def fake_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def api_client(
    monkeypatch: pytest.MonkeyPatch,
    reference_image: Path,
    fake_client: FakeGenerationClient,
) -> Iterator[TestClient]:
    monkeypatch.setenv("DAILY_GENERATION_LIMIT", "3")
    monkeypatch.setenv("TRUST_FORWARDED_FOR", "true")
    app.dependency_overrides[get_client_factory] = lambda: (lambda: fake_client)
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
