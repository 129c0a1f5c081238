"""Decoding of the provider's server-sent event stream.

Two layers:

* ``ChunkDecoder`` / ``iter_records`` turn arbitrarily split byte chunks into
  the payloads of ``data:`` lines. A line (or a multi-byte character) may be
  cut anywhere by the transport, so undecoded bytes and the trailing partial
  line are carried over to the next read.
* ``extract_token`` / ``iter_tokens`` interpret those payloads as OpenAI-style
  chat-completion chunks and pull out the incremental text.

Both async helpers are lazy, finite and single-use; stopping early is just
closing the generator.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator, List, Optional

from askrelay.services.errors import DecodeWarning, StreamDecodeError, UpstreamError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
TERMINATOR = "[DONE]"


class ChunkDecoder:
    """Incremental bytes -> ``data:`` payload splitter."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one chunk, return the payloads of every line it completed."""
        try:
            self._buffer += self._decoder.decode(chunk)
        except UnicodeDecodeError as exc:
            raise StreamDecodeError(f"Upstream sent invalid UTF-8: {exc}") from exc

        *lines, self._buffer = self._buffer.split("\n")
        return _payloads(lines)

    def flush(self) -> List[str]:
        """Signal end of input; return whatever the last unterminated line held."""
        try:
            self._buffer += self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise StreamDecodeError(f"Upstream stream ended mid-character: {exc}") from exc

        rest, self._buffer = self._buffer, ""
        return _payloads([rest])


def _payloads(lines: List[str]) -> List[str]:
    out = []
    for line in lines:
        line = line.strip()
        # blank lines separate events; comments and event:/id: lines carry no text
        if not line or not line.startswith(DATA_PREFIX):
            continue
        out.append(line[len(DATA_PREFIX):].strip())
    return out


async def iter_records(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield ``data:`` payloads from a stream of raw byte chunks."""
    decoder = ChunkDecoder()
    async for chunk in chunks:
        for payload in decoder.feed(chunk):
            yield payload
    for payload in decoder.flush():
        yield payload


def is_terminator(payload: str) -> bool:
    return payload == TERMINATOR


def extract_token(payload: str) -> Optional[str]:
    """Return the text carried by one completion chunk, if any.

    Raises ``DecodeWarning`` for payloads that are not JSON and
    ``UpstreamError`` when the provider reports an error inside the stream.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise DecodeWarning(f"Malformed stream record: {exc}: {payload[:80]!r}") from exc

    if not isinstance(data, dict):
        return None

    if data.get("error"):
        err = data["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise UpstreamError(f"Upstream reported an error mid-stream: {message}", body=payload)

    try:
        token = data["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(token, str) or not token:
        return None
    return token


async def iter_tokens(records: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield tokens in arrival order until the terminator record.

    Malformed records are logged and skipped. Running out of records before
    the terminator means the provider hung up early, which is an
    ``UpstreamError``.
    """
    skipped = 0
    async for payload in records:
        if is_terminator(payload):
            if skipped:
                logger.warning("Stream completed with %d malformed record(s) skipped", skipped)
            return
        try:
            token = extract_token(payload)
        except DecodeWarning as warn:
            skipped += 1
            logger.warning("%s", warn)
            continue
        if token:
            yield token
    raise UpstreamError("Upstream stream ended before completion")
