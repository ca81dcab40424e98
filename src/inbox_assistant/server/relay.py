"""Inference relay - bridges generation requests to the local model server.

The relay validates a GenerationRequest, forwards it to the inference
server (Ollama ``/api/chat``) as a single multimodal user turn with
``stream: true``, and re-exposes the upstream body as a plain-text stream
of decoded fragments.

Error boundary:
- BadRequest     -> request rejected before any upstream call (HTTP 400)
- UpstreamError  -> upstream unreachable or non-2xx before streaming (HTTP 502)
- Once streaming has begun, failures become inline text (see decoder.py);
  the HTTP status line is already committed.
"""

from __future__ import annotations

import codecs
import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from inbox_assistant.conventions import INFERENCE_CHAT_PATH, RELAY_MEDIA_TYPE
from inbox_assistant.schema import InferenceConfig

from .decoder import decode_stream

logger = logging.getLogger(__name__)


class BadRequest(ValueError):
    """The generation request is malformed or incomplete."""


class UpstreamError(RuntimeError):
    """The inference server failed before any body was streamed."""

    def __init__(self, status: int | None, details: str = "") -> None:
        self.status = status
        self.details = details
        if status is None:
            super().__init__(f"Inference server unreachable: {details}")
        else:
            super().__init__(f"Inference server returned HTTP {status}: {details}")


@dataclass
class Attachment:
    """An opaque attachment forwarded to the model (base64 or data URL)."""

    data: str | None = None
    filename: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {"data": self.data, "filename": self.filename}


@dataclass
class GenerationRequest:
    """Input to the relay. prompt and email_content cannot both be empty."""

    prompt: str = ""
    email_content: str = ""
    attachments: list[Attachment] = field(default_factory=list)

    def validate(self) -> None:
        if not self.prompt and not self.email_content:
            raise BadRequest("Missing prompt or emailContent")

    @property
    def content(self) -> str:
        """The single user turn sent upstream."""
        return f"{self.prompt or ''}\n\n{self.email_content or ''}".strip()

    def to_payload(self) -> dict[str, Any]:
        """Wire shape accepted by POST /generate (camelCase, like the UI sends)."""
        return {
            "prompt": self.prompt,
            "emailContent": self.email_content,
            "attachments": [a.to_payload() for a in self.attachments],
        }

    @classmethod
    def from_payload(cls, body: Any) -> GenerationRequest:
        """Build and validate a request from a decoded JSON body."""
        if not isinstance(body, dict):
            raise BadRequest("Request body must be a JSON object")

        prompt = body.get("prompt") or ""
        email_content = body.get("emailContent") or ""
        if not isinstance(prompt, str):
            raise BadRequest("prompt must be a string")
        if not isinstance(email_content, str):
            raise BadRequest("emailContent must be a string")

        raw_attachments = body.get("attachments") or []
        if not isinstance(raw_attachments, list):
            raise BadRequest("attachments must be a list")
        attachments = []
        for item in raw_attachments:
            if not isinstance(item, dict):
                raise BadRequest("each attachment must be an object")
            attachments.append(
                Attachment(data=item.get("data"), filename=item.get("filename"))
            )

        request = cls(
            prompt=prompt, email_content=email_content, attachments=attachments
        )
        request.validate()
        return request


class RelayStream:
    """Outbound byte stream for one generation.

    Iterating yields one UTF-8 encoded fragment per decoded upstream line,
    without batching. The upstream response is closed on every exit path.

    When the upstream success response has no body to decode, the stream
    is a raw passthrough of the upstream bytes with the upstream content
    type (``passthrough`` is True).
    """

    def __init__(self, response: httpx.Response, *, passthrough: bool = False) -> None:
        self._response = response
        self.passthrough = passthrough
        if passthrough:
            self.media_type = response.headers.get(
                "content-type", "application/octet-stream"
            )
        else:
            self.media_type = RELAY_MEDIA_TYPE
        self.headers = {"Cache-Control": "no-transform"}

    async def fragments(self) -> AsyncIterator[str]:
        """Decoded text fragments (not available in passthrough mode)."""
        if self.passthrough:
            raise RuntimeError("Passthrough streams carry no fragments")
        try:
            async for fragment in decode_stream(self._response.aiter_bytes()):
                yield fragment
        finally:
            await self.aclose()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            if self.passthrough:
                async for chunk in self._response.aiter_raw():
                    yield chunk
            else:
                async for fragment in self.fragments():
                    yield fragment.encode("utf-8")
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Close the upstream response; errors during close are swallowed."""
        with contextlib.suppress(httpx.HTTPError, RuntimeError, OSError):
            await self._response.aclose()


def _has_no_body(response: httpx.Response) -> bool:
    return response.status_code == 204 or response.headers.get("content-length") == "0"


class InferenceRelay:
    """Forwards generation requests to the inference server.

    Owns one httpx.AsyncClient (created lazily unless injected). Each
    request gets its own FrameDecoder via RelayStream.
    """

    def __init__(
        self,
        config: InferenceConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or InferenceConfig()
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def endpoint(self) -> str:
        return self._config.base_url.rstrip("/") + INFERENCE_CHAT_PATH

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(
                self._config.read_timeout_seconds,
                connect=self._config.connect_timeout_seconds,
            )
            self._client = httpx.AsyncClient(timeout=timeout)
        return self._client

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        """Build the Ollama chat payload for a validated request."""
        payload: dict[str, Any] = {
            "model": self._config.model,
            "messages": [{"role": "user", "content": request.content}],
            "stream": True,
        }
        if request.attachments:
            payload["images"] = [a.to_payload() for a in request.attachments]
        return payload

    async def open(self, request: GenerationRequest) -> RelayStream:
        """Start an upstream generation and return its outbound stream.

        Raises BadRequest or UpstreamError before anything is streamed.
        """
        request.validate()
        client = self._get_client()
        upstream = client.build_request(
            "POST", self.endpoint, json=self.build_payload(request)
        )
        try:
            response = await client.send(upstream, stream=True)
        except httpx.HTTPError as e:
            logger.warning("Inference server unreachable at %s: %s", self.endpoint, e)
            raise UpstreamError(None, str(e)) from e

        if not response.is_success:
            try:
                details = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                details = ""
            finally:
                with contextlib.suppress(httpx.HTTPError, RuntimeError, OSError):
                    await response.aclose()
            logger.warning(
                "Inference server returned %d: %s",
                response.status_code,
                details,
                extra={"upstream_status": response.status_code},
            )
            raise UpstreamError(response.status_code, details)

        if _has_no_body(response):
            logger.debug("Upstream response has no body; passing it through raw")
            return RelayStream(response, passthrough=True)
        return RelayStream(response)

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        """In-process text generator: yields decoded fragments."""
        relay_stream = await self.open(request)
        if relay_stream.passthrough:
            # Nothing to decode; forward whatever raw bytes there are as text.
            utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
            async for chunk in relay_stream:
                text = utf8.decode(chunk)
                if text:
                    yield text
            tail = utf8.decode(b"", final=True)
            if tail:
                yield tail
            return
        async for fragment in relay_stream.fragments():
            yield fragment

    async def aclose(self) -> None:
        """Close the owned HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
