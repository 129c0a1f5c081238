"""Tests for the chunk decoder and token extractor."""

from __future__ import annotations

import json
import random
from typing import AsyncIterator, List

import pytest

from askrelay.services.errors import DecodeWarning, StreamDecodeError, UpstreamError
from askrelay.services.sse import (
    ChunkDecoder,
    extract_token,
    is_terminator,
    iter_records,
    iter_tokens,
)

from streams import completion_chunk, split_every, sse_body

TOKENS = ["Hel", "lo", ", ", "wörld", " 日本", "語", "!\n", " 🚀"]
BODY = sse_body(TOKENS)
EXPECTED_PAYLOADS = [completion_chunk(t) for t in TOKENS] + ["[DONE]"]


def decode_all(chunks: List[bytes]) -> List[str]:
    decoder = ChunkDecoder()
    out: List[str] = []
    for chunk in chunks:
        out.extend(decoder.feed(chunk))
    out.extend(decoder.flush())
    return out


async def agen(chunks: List[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


# ---------------------------------------------------------------------------
# Chunk boundaries
# ---------------------------------------------------------------------------

class TestChunkBoundaries:
    def test_whole_body_in_one_read(self):
        assert decode_all([BODY]) == EXPECTED_PAYLOADS

    @pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 13, 64])
    def test_fixed_size_reads(self, size: int):
        assert decode_all(split_every(BODY, size)) == EXPECTED_PAYLOADS

    def test_every_single_split_point(self):
        for i in range(len(BODY) + 1):
            assert decode_all([BODY[:i], BODY[i:]]) == EXPECTED_PAYLOADS, f"split at {i}"

    def test_random_multi_splits(self):
        rng = random.Random(1234)
        for _ in range(200):
            cuts = sorted(rng.sample(range(1, len(BODY)), k=rng.randint(1, 12)))
            bounds = [0, *cuts, len(BODY)]
            chunks = [BODY[a:b] for a, b in zip(bounds, bounds[1:])]
            assert decode_all(chunks) == EXPECTED_PAYLOADS

    def test_multibyte_character_split_across_reads(self):
        line = "data: {\"x\": \"日\"}\n".encode("utf-8")
        cut = line.index("日".encode("utf-8")) + 1
        decoder = ChunkDecoder()
        assert decoder.feed(line[:cut]) == []
        assert decoder.feed(line[cut:]) == ['{"x": "日"}']

    async def test_async_records_match_sync_decoder(self):
        records = [r async for r in iter_records(agen(split_every(BODY, 4)))]
        assert records == EXPECTED_PAYLOADS


# ---------------------------------------------------------------------------
# Line filtering
# ---------------------------------------------------------------------------

class TestLineFiltering:
    def test_ignores_blank_comment_and_event_lines(self):
        raw = b"\n\n: keep-alive\nevent: message\nid: 7\ndata: {\"a\":1}\n\n"
        assert decode_all([raw]) == ['{"a":1}']

    def test_crlf_line_endings(self):
        raw = b"data: first\r\n\r\ndata: [DONE]\r\n\r\n"
        assert decode_all([raw]) == ["first", "[DONE]"]

    def test_prefix_without_space(self):
        assert decode_all([b"data:[DONE]\n"]) == ["[DONE]"]

    def test_trailing_line_without_newline_is_flushed(self):
        decoder = ChunkDecoder()
        assert decoder.feed(b"data: [DO") == []
        assert decoder.feed(b"NE]") == []
        assert decoder.flush() == ["[DONE]"]

    def test_invalid_utf8_is_a_decode_fault(self):
        decoder = ChunkDecoder()
        with pytest.raises(StreamDecodeError):
            decoder.feed(b"data: \xff\xfe\n")

    def test_truncated_character_at_end_is_a_decode_fault(self):
        decoder = ChunkDecoder()
        decoder.feed("data: 日".encode("utf-8")[:-1])
        with pytest.raises(StreamDecodeError):
            decoder.flush()


# ---------------------------------------------------------------------------
# Token extraction
# ---------------------------------------------------------------------------

class TestExtractToken:
    def test_terminator(self):
        assert is_terminator("[DONE]")
        assert not is_terminator("[DONE] ")
        assert not is_terminator(completion_chunk("[DONE]"))

    def test_delta_content(self):
        assert extract_token(completion_chunk("4")) == "4"

    def test_whitespace_token_is_kept(self):
        assert extract_token(completion_chunk(" ")) == " "

    @pytest.mark.parametrize(
        "payload",
        [
            json.dumps({"choices": []}),
            json.dumps({"choices": [{"delta": {}}]}),
            json.dumps({"choices": [{"delta": {"content": ""}}]}),
            json.dumps({"choices": [{"delta": {"content": None}, "finish_reason": "stop"}]}),
            json.dumps({"choices": [{"delta": {"content": 5}}]}),
            json.dumps({"usage": {"total_tokens": 3}}),
            json.dumps([1, 2, 3]),
        ],
    )
    def test_records_without_text(self, payload: str):
        assert extract_token(payload) is None

    def test_malformed_json_warns(self):
        with pytest.raises(DecodeWarning):
            extract_token('{"choices": [')

    def test_in_stream_provider_error(self):
        payload = json.dumps({"error": {"message": "Rate limit exceeded", "code": 429}})
        with pytest.raises(UpstreamError, match="Rate limit exceeded"):
            extract_token(payload)


class TestIterTokens:
    async def test_stops_at_terminator(self):
        records = [completion_chunk("a"), "[DONE]", completion_chunk("never")]
        assert [t async for t in iter_tokens(agen(records))] == ["a"]

    async def test_malformed_record_between_valid_ones(self, caplog):
        records = [completion_chunk("one"), "{not json", completion_chunk("two"), "[DONE]"]
        with caplog.at_level("WARNING"):
            tokens = [t async for t in iter_tokens(agen(records))]
        assert tokens == ["one", "two"]
        assert "Malformed stream record" in caplog.text

    async def test_stream_ending_without_terminator(self):
        collected = []
        with pytest.raises(UpstreamError, match="ended before completion"):
            async for token in iter_tokens(agen([completion_chunk("partial")])):
                collected.append(token)
        assert collected == ["partial"]

    async def test_full_pipeline_is_chunk_boundary_invariant(self):
        for size in (1, 3, 11, 1000):
            tokens = [t async for t in iter_tokens(iter_records(agen(split_every(BODY, size))))]
            assert tokens == TOKENS
