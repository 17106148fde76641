from __future__ import annotations

import asyncio
import base64
import json

import pytest

from companion_engine.adapters import gradio_images
from companion_engine.adapters.gradio_images import GradioImageService, parse_sse_image_url
from companion_engine.core.config import GradioImageConfig
from companion_engine.core.errors import ImageSynthesisError
from companion_engine.core.types import ImageKind, ImageRequest


class FakeResponse:
    def __init__(self, body: bytes, status: int = 200, content_type: str = "application/json"):
        self._body = body
        self.status = status
        self.headers = {"Content-Type": content_type}

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeGradio:
    def __init__(self, sse_body: str, image_bytes: bytes = b"\x89PNG"):
        self.sse_body = sse_body
        self.image_bytes = image_bytes
        self.requests = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        url = request.full_url
        if request.get_method() == "POST":
            return FakeResponse(json.dumps({"event_id": "evt-1"}).encode("utf-8"))
        if url.endswith("/evt-1"):
            return FakeResponse(self.sse_body.encode("utf-8"), content_type="text/event-stream")
        return FakeResponse(self.image_bytes, content_type="image/webp")


SSE_OK = 'event: complete\ndata: [{"url": "https://gradio.test/file/out.webp", "path": "/tmp/out.webp"}]\n\n'


def test_synthesize_submits_polls_and_returns_data_url(monkeypatch):
    fake = FakeGradio(SSE_OK)
    monkeypatch.setattr(gradio_images.urllib_request, "urlopen", fake)
    service = GradioImageService(GradioImageConfig(endpoint="https://gradio.test/call/generate/"))

    image = asyncio.run(service.synthesize(ImageRequest(kind=ImageKind.PORTRAIT, subject="silver hair")))

    assert image == "data:image/webp;base64," + base64.b64encode(b"\x89PNG").decode("ascii")
    submit, poll, download = fake.requests
    assert submit.full_url == "https://gradio.test/call/generate"
    body = json.loads(submit.data.decode("utf-8"))
    assert body["data"][1:] == [1024, 768]
    assert "silver hair" in body["data"][0]
    assert poll.full_url == "https://gradio.test/call/generate/evt-1"
    assert download.full_url == "https://gradio.test/file/out.webp"


def test_scene_requests_use_landscape_size(monkeypatch):
    fake = FakeGradio(SSE_OK)
    monkeypatch.setattr(gradio_images.urllib_request, "urlopen", fake)
    service = GradioImageService(GradioImageConfig(endpoint="https://gradio.test/run"))

    asyncio.run(service.synthesize(ImageRequest(kind=ImageKind.SCENE, subject="x")))

    body = json.loads(fake.requests[0].data.decode("utf-8"))
    assert body["data"][1:] == [576, 1024]


def test_transport_errors_become_image_synthesis_errors(monkeypatch):
    def broken(request, timeout=None):
        raise OSError("connection refused")

    monkeypatch.setattr(gradio_images.urllib_request, "urlopen", broken)
    service = GradioImageService(GradioImageConfig(endpoint="https://gradio.test/run"))

    with pytest.raises(ImageSynthesisError):
        asyncio.run(service.synthesize(ImageRequest(kind=ImageKind.ITEM, subject="key")))


def test_missing_endpoint_fails_fast():
    service = GradioImageService(GradioImageConfig())
    with pytest.raises(ImageSynthesisError):
        asyncio.run(service.synthesize(ImageRequest(kind=ImageKind.ITEM, subject="key")))


def test_sse_parsing_rejects_bodies_without_an_image():
    assert parse_sse_image_url(SSE_OK) == "https://gradio.test/file/out.webp"
    with pytest.raises(ImageSynthesisError):
        parse_sse_image_url("event: error\ndata: null\n")
    with pytest.raises(ImageSynthesisError):
        parse_sse_image_url('data: [{"path": "/tmp/x"}]')
