"""Error taxonomy for the streaming relay.

A client disconnect is deliberately absent: it surfaces as the event
generator being closed or cancelled, never as an exception of ours.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class ValidationError(RelayError):
    """The caller's question is missing or blank."""


class UpstreamError(RelayError):
    """The provider failed: connection error, non-success status or a fault
    reported inside the stream."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StreamDecodeError(UpstreamError):
    """The upstream bytes could not be decoded at all."""


class DecodeWarning(RelayError):
    """A single stream record could not be parsed. Never fatal."""


class SinkError(RelayError):
    """Appending to the history store failed."""
