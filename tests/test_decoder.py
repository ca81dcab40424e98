"""Tests for the streaming frame decoder.

Covers line parsing (extractor order, leniency), chunk-boundary buffering,
end-of-stream flush, and transport failure handling in decode_stream.
"""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import chunked
from inbox_assistant.conventions import STREAM_ERROR_MARKER
from inbox_assistant.server.decoder import (
    FrameDecoder,
    Recognized,
    Unrecognized,
    decode_stream,
    fragment_for,
    parse_line,
)


def _decode_all(chunks: list[bytes]) -> list[str]:
    decoder = FrameDecoder()
    fragments: list[str] = []
    for chunk in chunks:
        fragments.extend(decoder.feed(chunk))
    fragments.extend(decoder.finish())
    return fragments


# ===================================================================
# parse_line
# ===================================================================


class TestParseLine:
    def test_message_content(self) -> None:
        line = '{"message": {"role": "assistant", "content": "Bonj"}, "done": false}'
        assert parse_line(line) == Recognized("Bonj")

    def test_flat_text(self) -> None:
        assert parse_line('{"text": "hi"}') == Recognized("hi")

    def test_flat_data(self) -> None:
        assert parse_line('{"data": "payload"}') == Recognized("payload")

    def test_message_content_wins_over_text(self) -> None:
        line = json.dumps({"text": "second", "message": {"content": "first"}})
        assert parse_line(line) == Recognized("first")

    def test_text_wins_over_data(self) -> None:
        assert parse_line('{"data": "b", "text": "a"}') == Recognized("a")

    def test_null_message_content_falls_through(self) -> None:
        line = '{"message": {"content": null}, "text": "fallback"}'
        assert parse_line(line) == Recognized("fallback")

    def test_empty_content_stops_search(self) -> None:
        """A present-but-empty payload is not replaced by a later field."""
        line = '{"message": {"content": ""}, "text": "ignored"}'
        assert parse_line(line) == Recognized("")

    def test_json_without_known_fields(self) -> None:
        assert parse_line('{"done": true, "total_duration": 12}') == Recognized("")

    def test_json_non_object(self) -> None:
        assert parse_line("[1, 2, 3]") == Recognized("")
        assert parse_line("42") == Recognized("")

    def test_non_string_payload_rendered_as_json(self) -> None:
        assert parse_line('{"data": {"k": 1}}') == Recognized('{"k": 1}')
        assert parse_line('{"text": 7}') == Recognized("7")

    def test_malformed_json_is_unrecognized(self) -> None:
        assert parse_line('{"message": {"content": "oops"') == Unrecognized(
            '{"message": {"content": "oops"'
        )

    def test_plain_text_is_unrecognized(self) -> None:
        assert parse_line("  hello world  ") == Unrecognized("hello world")

    @pytest.mark.parametrize("word", ["NaN", "Infinity", "-Infinity"])
    def test_non_standard_constants_are_unrecognized(self, word: str) -> None:
        assert parse_line(word) == Unrecognized(word)
        line = f'{{"text": {word}}}'
        assert parse_line(line) == Unrecognized(line)

    def test_non_standard_constants_pass_through(self) -> None:
        assert _decode_all([b"NaN\nInfinity\n-Infinity\n"]) == [
            "NaN\n",
            "Infinity\n",
            "-Infinity\n",
        ]

    def test_blank_lines(self) -> None:
        assert parse_line("") is None
        assert parse_line("   \t ") is None
        assert parse_line("\r") is None

    def test_crlf_is_trimmed(self) -> None:
        assert parse_line('{"text": "x"}\r') == Recognized("x")


class TestFragmentFor:
    def test_recognized_text(self) -> None:
        assert fragment_for(Recognized("abc")) == "abc"

    def test_recognized_empty_emits_nothing(self) -> None:
        assert fragment_for(Recognized("")) is None

    def test_unrecognized_terminated_keeps_newline(self) -> None:
        assert fragment_for(Unrecognized("raw")) == "raw\n"

    def test_unrecognized_unterminated(self) -> None:
        assert fragment_for(Unrecognized("raw"), terminated=False) == "raw"

    def test_none(self) -> None:
        assert fragment_for(None) is None


# ===================================================================
# FrameDecoder
# ===================================================================


class TestFrameDecoder:
    BODY = (
        b'{"message":{"content":"Bonj"}}\n'
        b'{"message":{"content":"our"}}\n'
        b"plain text line\n"
        b"\n"
        b'{"text":" \xc3\xa0 tous"}\n'
        b'{"done":true}\n'
    )
    EXPECTED = ["Bonj", "our", "plain text line\n", " à tous"]

    def test_single_chunk(self) -> None:
        assert _decode_all([self.BODY]) == self.EXPECTED

    @pytest.mark.parametrize("offset", [1, 5, 17, 30, 31, 40, 61, 77, 89, 100])
    def test_split_at_any_offset(self, offset: int) -> None:
        chunks = [self.BODY[:offset], self.BODY[offset:]]
        assert _decode_all(chunks) == self.EXPECTED

    def test_byte_by_byte(self) -> None:
        chunks = [self.BODY[i : i + 1] for i in range(len(self.BODY))]
        assert _decode_all(chunks) == self.EXPECTED

    def test_multibyte_character_split_across_chunks(self) -> None:
        data = '{"text":"é"}\n'.encode()
        cut = data.index(b"\xc3") + 1
        assert _decode_all([data[:cut], data[cut:]]) == ["é"]

    def test_partial_line_buffered_until_next_chunk(self) -> None:
        decoder = FrameDecoder()
        assert decoder.feed(b'{"text":"he') == []
        assert decoder.feed(b'llo"}\n') == ["hello"]

    def test_crlf_line_endings(self) -> None:
        assert _decode_all([b'{"text":"a"}\r\n{"text":"b"}\r\n']) == ["a", "b"]

    def test_finish_flushes_partial_json_line(self) -> None:
        assert _decode_all([b'{"text":"a"}\n{"text":"tail"}']) == ["a", "tail"]

    def test_finish_flushes_partial_plain_line_without_newline(self) -> None:
        assert _decode_all([b"no newline at end"]) == ["no newline at end"]

    def test_finish_ignores_whitespace_remainder(self) -> None:
        assert _decode_all([b'{"text":"a"}\n   ']) == ["a"]

    def test_finish_is_idempotent(self) -> None:
        decoder = FrameDecoder()
        decoder.feed(b"tail")
        assert decoder.finish() == ["tail"]
        assert decoder.finish() == []

    def test_feed_after_finish_raises(self) -> None:
        decoder = FrameDecoder()
        decoder.finish()
        with pytest.raises(RuntimeError):
            decoder.feed(b"x\n")

    def test_empty_chunk(self) -> None:
        assert FrameDecoder().feed(b"") == []

    def test_malformed_lines_never_dropped(self) -> None:
        body = b"{broken\n{\"text\":\"ok\"}\n}}}\n"
        assert _decode_all([body]) == ["{broken\n", "ok", "}}}\n"]


# ===================================================================
# decode_stream
# ===================================================================


class TestDecodeStream:
    async def test_yields_fragments_in_order(self) -> None:
        source = chunked([b'{"text":"a"}\n{"te', b'xt":"b"}\n', b'{"text":"c"}'])
        assert [f async for f in decode_stream(source)] == ["a", "b", "c"]

    async def test_transport_error_yields_single_marker(self) -> None:
        source = chunked(
            [b'{"message":{"content":"Hello"}}\n'],
            error=httpx.ReadError("connection reset"),
        )
        fragments = [f async for f in decode_stream(source)]
        assert fragments == ["Hello", STREAM_ERROR_MARKER]

    async def test_os_error_yields_marker(self) -> None:
        source = chunked([], error=ConnectionResetError("peer gone"))
        assert [f async for f in decode_stream(source)] == [STREAM_ERROR_MARKER]

    async def test_partial_line_discarded_on_transport_error(self) -> None:
        source = chunked(
            [b'{"text":"ok"}\n{"text":"cut'], error=httpx.RemoteProtocolError("eof")
        )
        assert [f async for f in decode_stream(source)] == ["ok", STREAM_ERROR_MARKER]

    async def test_decoding_error_yields_marker(self) -> None:
        source = chunked(
            [b'{"message":{"content":"Hello"}}\n'],
            error=httpx.DecodingError("corrupt body"),
        )
        fragments = [f async for f in decode_stream(source)]
        assert fragments == ["Hello", STREAM_ERROR_MARKER]

    async def test_non_transport_errors_propagate(self) -> None:
        source = chunked([b"x\n"], error=ValueError("bug"))
        with pytest.raises(ValueError):
            [f async for f in decode_stream(source)]
