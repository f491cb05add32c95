# chatpipe/core/errors.py
"""
Error types shared by the pipeline, the streaming client and the relay.

Callers rely on the split between StreamCancelled (an intentional stop) and
StreamError (something went wrong): the former must never surface as a
user-facing error.
"""

from typing import Optional


class ChatPipeError(RuntimeError):
    """Base class for pipeline failures."""


class ValidationError(ChatPipeError, ValueError):
    """Input rejected before any network call (empty message, bad message list)."""


class ConfigurationError(ChatPipeError):
    """Configuration cannot be used as given (e.g. a base URL without a scheme)."""


class StreamError(ChatPipeError):
    """Transport, HTTP or protocol failure while talking to the relay."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        # No status means the connection itself failed
        if self.status_code is None:
            return True
        return self.status_code in {408, 409, 425, 429, 500, 502, 503, 504}


class EmptyResponseError(StreamError):
    """The stream ended cleanly but carried no text."""

    @property
    def transient(self) -> bool:
        return False


class StreamCancelled(ChatPipeError):
    """The caller cancelled the stream. Not a failure."""
