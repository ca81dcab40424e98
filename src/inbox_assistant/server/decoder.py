"""Frame decoder for the inference server's streaming output.

Ollama streams one JSON object per line, shaped like
``{"message": {"role": ..., "content": ...}, "done": false}``, but a
misbehaving or proxied upstream may also emit plain text, malformed JSON,
or split a line across two network chunks. The decoder turns that byte
stream into an ordered sequence of text fragments:

- Complete lines are parsed into a ``Recognized`` or ``Unrecognized``
  result. Recognized lines contribute their text payload; unrecognized
  lines are passed through verbatim.
- The trailing partial line is buffered until the next chunk, and flushed
  best-effort at end of stream.
- A transport failure while reading surfaces as one terminal marker
  fragment instead of an exception.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from inbox_assistant.conventions import STREAM_ERROR_MARKER

logger = logging.getLogger(__name__)

# Errors from the chunk source that end the stream with the terminal marker.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.HTTPError,
    httpx.StreamError,
    OSError,
)


@dataclass(frozen=True)
class Recognized:
    """A line that parsed as JSON. ``text`` is empty when it carries no payload."""

    text: str


@dataclass(frozen=True)
class Unrecognized:
    """A line that is not valid JSON, kept as-is (already trimmed)."""

    raw_line: str


ParsedLine = Recognized | Unrecognized


def _message_content(obj: Any) -> Any:
    message = obj.get("message") if isinstance(obj, dict) else None
    return message.get("content") if isinstance(message, dict) else None


def _flat_text(obj: Any) -> Any:
    return obj.get("text") if isinstance(obj, dict) else None


def _flat_data(obj: Any) -> Any:
    return obj.get("data") if isinstance(obj, dict) else None


# Tried in order; the first extractor returning a non-null value wins.
TEXT_EXTRACTORS: tuple[Callable[[Any], Any], ...] = (
    _message_content,
    _flat_text,
    _flat_data,
)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"not a JSON value: {name}")


def parse_line(line: str) -> ParsedLine | None:
    """Parse one logical line. Returns None for blank lines."""
    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        obj = json.loads(trimmed, parse_constant=_reject_constant)
    except ValueError:
        return Unrecognized(raw_line=trimmed)

    for extract in TEXT_EXTRACTORS:
        value = extract(obj)
        if value is not None:
            # A present-but-falsy payload ("" / 0 / false) still stops the search.
            return Recognized(text=_as_text(value) if value else "")
    return Recognized(text="")


def fragment_for(parsed: ParsedLine | None, *, terminated: bool = True) -> str | None:
    """Map a parse result to the fragment to emit, or None.

    Unrecognized lines that were newline-terminated upstream keep a single
    trailing newline so plain-text output keeps its line structure.
    """
    if parsed is None:
        return None
    if isinstance(parsed, Recognized):
        return parsed.text or None
    if terminated:
        return parsed.raw_line + "\n"
    return parsed.raw_line


class FrameDecoder:
    """Incremental line decoder with a single carry-over buffer.

    Usage:
        decoder = FrameDecoder()
        for chunk in chunks:
            fragments.extend(decoder.feed(chunk))
        fragments.extend(decoder.finish())
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._finished = False

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one chunk; return fragments for every line it completes."""
        if self._finished:
            raise RuntimeError("FrameDecoder.feed() called after finish()")
        if not chunk:
            return []
        self._buffer += self._utf8.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")

        fragments: list[str] = []
        for line in lines:
            fragment = fragment_for(parse_line(line))
            if fragment is not None:
                fragments.append(fragment)
        return fragments

    def finish(self) -> list[str]:
        """Signal end of stream; flush a non-empty partial line."""
        if self._finished:
            return []
        self._finished = True
        self._buffer += self._utf8.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        fragment = fragment_for(parse_line(remainder), terminated=False)
        return [fragment] if fragment is not None else []


async def decode_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Lazily decode an async byte-chunk source into text fragments.

    If the source raises a transport error, one ``STREAM_ERROR_MARKER``
    fragment is yielded and the sequence ends. Fragments already yielded
    stay delivered.
    """
    decoder = FrameDecoder()
    try:
        async for chunk in chunks:
            for fragment in decoder.feed(chunk):
                yield fragment
    except TRANSPORT_ERRORS as e:
        logger.warning("Upstream stream failed mid-read: %s", e)
        yield STREAM_ERROR_MARKER
        return

    for fragment in decoder.finish():
        yield fragment
