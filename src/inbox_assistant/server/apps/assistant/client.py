"""HTTP client for the assistant's /generate endpoint.

The relay already emits normalized plain text, so the client only has to
decode UTF-8 incrementally; a multi-byte character split across two
network chunks is held back until it is complete.
"""

from __future__ import annotations

import codecs
import logging
from collections.abc import AsyncIterator

import httpx

from inbox_assistant.server.relay import GenerationRequest

logger = logging.getLogger(__name__)

GENERATE_PATH = "/apps/assistant/generate"


class RelayHTTPError(RuntimeError):
    """The relay answered with a non-2xx status before streaming."""

    def __init__(self, status: int, text: str = "") -> None:
        self.status = status
        self.text = text
        super().__init__(f"Relay returned HTTP {status}: {text}")


class RelayClient:
    """Streams generated text from a running assistant server."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        path: str = GENERATE_PATH,
    ) -> None:
        self._url = base_url.rstrip("/") + path
        self._client = http_client

    @property
    def url(self) -> str:
        return self._url

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        """Yield decoded text chunks as the relay produces them.

        Raises RelayHTTPError on a non-2xx response.
        """
        if self._client is not None:
            async for text in self._stream(self._client, request):
                yield text
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0)) as c:
            async for text in self._stream(c, request):
                yield text

    async def _stream(
        self, client: httpx.AsyncClient, request: GenerationRequest
    ) -> AsyncIterator[str]:
        async with client.stream("POST", self._url, json=request.to_payload()) as resp:
            if not resp.is_success:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                logger.warning("Relay returned %d: %s", resp.status_code, body)
                raise RelayHTTPError(resp.status_code, body)

            utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
            async for chunk in resp.aiter_bytes():
                text = utf8.decode(chunk)
                if text:
                    yield text
            tail = utf8.decode(b"", final=True)
            if tail:
                yield tail
