"""
Exception types raised by the model server client.

User cancellation is not modelled here: it travels as asyncio.CancelledError,
which callers can always tell apart from these failures.
"""

from __future__ import annotations


class ThinklineError(Exception):
    """Base for every failure the client reports."""


class ServerUnreachableError(ThinklineError):
    """The server could not be reached (DNS, refused connection, reset)."""


class RequestTimeoutError(ServerUnreachableError):
    """The server did not answer in time."""


class ServerStatusError(ThinklineError):
    """The server answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class ModelListError(ServerStatusError):
    """GET /api/tags failed."""


class ModelInfoError(ServerStatusError):
    """POST /api/show failed."""


class MalformedResponseError(ThinklineError):
    """A non-streaming response body was not the JSON we expected."""


class ModelUnavailableError(ThinklineError):
    """The requested model is not installed on the server. Pull it, then retry."""

    def __init__(self, model: str):
        super().__init__(f"Model {model} is not available. Please pull it first.")
        self.model = model


class StreamReadError(ThinklineError):
    """The streaming channel failed part way through."""
