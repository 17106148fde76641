from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from typing import Any
from urllib import request as urllib_request

from ..core.config import GradioImageConfig
from ..core.errors import ImageSynthesisError
from ..core.prompts import build_image_prompt
from ..core.types import ImageKind, ImageRequest

_SSE_DATA_RE = re.compile(r"data:\s*(\[.*\])")


class GradioImageService:
    """``ImageSynthesisPort`` backed by a Gradio text-to-image endpoint.

    The endpoint is called in two steps: a POST that returns an ``event_id``,
    then a GET on ``<endpoint>/<event_id>`` whose server-sent-event body
    carries the generated image URL. The image is downloaded and returned as
    a base64 data URL. Blocking I/O runs in a worker thread.
    """

    USER_AGENT = "Mozilla/5.0"

    def __init__(
        self,
        config: GradioImageConfig,
        *,
        logger: logging.Logger | None = None,
    ):
        self._config = config
        self._logger = logger or logging.getLogger(__name__)

    async def synthesize(self, request: ImageRequest) -> str:
        if not self._config.endpoint:
            raise ImageSynthesisError("no gradio endpoint configured")
        prompt = build_image_prompt(request)
        width, height = self._size_for(request.kind)
        try:
            return await asyncio.to_thread(self._generate, prompt, width, height)
        except ImageSynthesisError:
            raise
        except Exception as exc:
            self._logger.warning("Gradio %s generation failed: %s", request.kind.value, exc)
            raise ImageSynthesisError(str(exc)) from exc

    def _size_for(self, kind: ImageKind) -> tuple[int, int]:
        sizes = self._config.sizes
        if kind == ImageKind.PORTRAIT:
            return sizes.portrait
        if kind == ImageKind.ITEM:
            return sizes.item
        return sizes.scene

    def _generate(self, prompt: str, width: int, height: int) -> str:
        endpoint = self._config.endpoint.rstrip("/")
        event_id = self._submit(endpoint, prompt, width, height)
        image_url = self._await_result(endpoint, event_id)
        return self._download_as_data_url(image_url)

    def _submit(self, endpoint: str, prompt: str, width: int, height: int) -> str:
        # The endpoint takes height before width.
        body = json.dumps({"data": [prompt, height, width]}).encode("utf-8")
        request = urllib_request.Request(
            endpoint,
            data=body,
            headers={"Content-Type": "application/json", "User-Agent": self.USER_AGENT},
            method="POST",
        )
        with urllib_request.urlopen(request, timeout=self._config.timeout_seconds) as response:  # noqa: S310
            if response.status != 200:
                raise ImageSynthesisError(f"gradio submit failed: {response.status}")
            payload = response.read().decode("utf-8", errors="replace")
        try:
            data: Any = json.loads(payload)
        except ValueError:
            data = payload.strip()
        event_id = data.get("event_id") if isinstance(data, dict) else data
        if not isinstance(event_id, str) or not event_id:
            raise ImageSynthesisError("no event_id returned from gradio")
        return event_id

    def _await_result(self, endpoint: str, event_id: str) -> str:
        request = urllib_request.Request(
            f"{endpoint}/{event_id}",
            headers={"User-Agent": self.USER_AGENT},
        )
        with urllib_request.urlopen(request, timeout=self._config.timeout_seconds) as response:  # noqa: S310
            if response.status != 200:
                raise ImageSynthesisError(f"gradio result fetch failed: {response.status}")
            text = response.read().decode("utf-8", errors="replace")
        return parse_sse_image_url(text)

    def _download_as_data_url(self, url: str) -> str:
        request = urllib_request.Request(url, headers={"User-Agent": self.USER_AGENT})
        with urllib_request.urlopen(request, timeout=self._config.timeout_seconds) as response:  # noqa: S310
            if response.status != 200:
                raise ImageSynthesisError(f"image download failed: {response.status}")
            content_type = response.headers.get("Content-Type") or "image/png"
            raw = response.read()
        encoded = base64.b64encode(raw).decode("ascii")
        return f"data:{content_type.split(';')[0].strip()};base64,{encoded}"


def parse_sse_image_url(text: str) -> str:
    """Pull the first image URL out of a Gradio SSE result body."""
    match = _SSE_DATA_RE.search(text or "")
    if not match:
        raise ImageSynthesisError("could not parse gradio SSE response")
    try:
        data = json.loads(match.group(1))
    except ValueError as exc:
        raise ImageSynthesisError("malformed gradio SSE payload") from exc
    info = data[0] if isinstance(data, list) and data else None
    url = info.get("url") if isinstance(info, dict) else None
    if not isinstance(url, str) or not url:
        raise ImageSynthesisError("no image url in gradio response")
    return url
