"""Exceptions raised by the streaming chat pipeline."""

from __future__ import annotations

__all__ = [
    "NoteCanvasError",
    "TransportError",
    "ServerError",
    "DecodeError",
    "TurnInProgressError",
    "StaleSessionError",
]


class NoteCanvasError(Exception):
    """Root of every notecanvas-specific exception."""


class TransportError(NoteCanvasError):
    """Raised when the remote call cannot be opened or drops mid-stream.

    ``status_code`` is set for non-2xx HTTP responses.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status={self.status_code})"


class ServerError(NoteCanvasError):
    """Raised for an explicit ``error`` frame sent by the server."""


class DecodeError(NoteCanvasError):
    """A transport frame could not be decoded.

    Raised inside :class:`~notecanvas.ai.orchestration.event_decoder.EventDecoder`
    and caught there; it never escapes ``decode``. ``frame`` holds the
    offending input for logging.
    """

    def __init__(self, message: str, *, frame: object = None) -> None:
        super().__init__(message)
        self.frame = frame


class TurnInProgressError(NoteCanvasError):
    """Raised when a caller explicitly asks for a fresh turn while one is running."""


class StaleSessionError(NoteCanvasError):
    """The session token a turn was started with has been invalidated."""

    def __init__(self, token: int, current: int) -> None:
        super().__init__(f"Session token {token} is stale (current token is {current})")
        self.token = token
        self.current = current
