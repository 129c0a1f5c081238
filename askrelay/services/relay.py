"""Per-request relay between the upstream token stream and the client.

A ``RelaySession`` owns exactly one upstream stream and one client response.
Lifecycle::

    OPEN -> STREAMING -> COMPLETED | FAILED | CLIENT_ABORTED

``open()`` happens before the response starts, so a provider failure there
can still become an ordinary JSON error. Once ``events()`` is being consumed
the only way to report trouble is a final ``{"error": ...}`` frame.

When the client goes away the consumer stops iterating ``events()`` (the
generator is closed or its task cancelled); the upstream connection is
released right there and the partial answer is discarded, never persisted.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

import anyio

from askrelay.services.errors import UpstreamError, ValidationError
from askrelay.services.history import HistoryWriter
from askrelay.services.sse import TERMINATOR, iter_records, iter_tokens
from askrelay.services.upstream import UpstreamClient, UpstreamStream

logger = logging.getLogger(__name__)

CLIENT_ERROR_MESSAGE = "Failed to get AI response"
DONE_FRAME = f"data: {TERMINATOR}\n\n"


class SessionState(str, enum.Enum):
    OPEN = "open"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CLIENT_ABORTED = "client_aborted"


def normalize_question(raw: Optional[str]) -> str:
    if raw is None or not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Question is required")
    return raw.strip()


def sse_frame(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False, separators=(',', ':'))}\n\n"


class RelaySession:
    def __init__(self, question: str, upstream: UpstreamClient, writer: HistoryWriter):
        self.question = normalize_question(question)
        self.upstream = upstream
        self.writer = writer
        self.state = SessionState.OPEN
        self.tokens: List[str] = []
        self.history_task: Optional[asyncio.Task] = None
        self._stream: Optional[UpstreamStream] = None

    @property
    def answer(self) -> str:
        return "".join(self.tokens)

    async def open(self) -> None:
        """Request the upstream stream. ``UpstreamError`` propagates."""
        try:
            self._stream = await self.upstream.open_stream(self.question)
        except UpstreamError:
            self.state = SessionState.FAILED
            raise

    async def events(self) -> AsyncIterator[str]:
        """Server-sent event frames for the client, in token arrival order."""
        if self._stream is None:
            raise RuntimeError("RelaySession.open() must succeed before events()")

        self.state = SessionState.STREAMING
        try:
            tokens = iter_tokens(iter_records(self._stream.aiter_bytes()))
            async with aclosing(tokens):
                async for token in tokens:
                    self.tokens.append(token)
                    yield sse_frame({"token": token})
        except UpstreamError as exc:
            self.state = SessionState.FAILED
            logger.error("Relay failed after %d token(s): %s", len(self.tokens), exc)
            await self.aclose()
            yield sse_frame({"error": CLIENT_ERROR_MESSAGE})
            return
        except (asyncio.CancelledError, GeneratorExit):
            self.state = SessionState.CLIENT_ABORTED
            logger.info("Client disconnected after %d token(s); partial answer discarded", len(self.tokens))
            raise
        finally:
            with anyio.CancelScope(shield=True):
                await self.aclose()

        try:
            yield DONE_FRAME
        except (asyncio.CancelledError, GeneratorExit):
            self.state = SessionState.CLIENT_ABORTED
            logger.info("Client disconnected before [DONE]; answer discarded")
            raise
        self.state = SessionState.COMPLETED
        answer = self.answer.strip()
        logger.info("Relay completed: %d token(s), %d chars", len(self.tokens), len(answer))
        if answer:
            self.history_task = self.writer.schedule(self.question, answer)

    async def aclose(self) -> None:
        """Release the upstream connection. Safe to call more than once."""
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.aclose()
