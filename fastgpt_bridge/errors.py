"""
Exception types raised by the chat client and the session store.
"""
from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class GateClosedError(BridgeError):
    """The admission gate was shut down; the request can never be admitted."""


class TransportError(BridgeError):
    """The request never produced a response (DNS, connect, timeout)."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Transport error talking to chat backend: {cause}")


class RemoteError(BridgeError):
    """The backend kept answering with a non-2xx status."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"Chat backend returned HTTP {status}: {body[:500]}")


class DecodeError(BridgeError):
    """The response body could not be decoded; decoding was aborted."""


class CallbackError(BridgeError):
    """The caller's progress callback raised while a stream was being decoded."""

    def __init__(self, event_name: str, cause: BaseException):
        self.event_name = event_name
        self.cause = cause
        super().__init__(f"Progress callback failed on event {event_name!r}: {cause}")


class EmptyAnswerError(BridgeError):
    """The backend finished without producing any answer text."""


class StorageError(BridgeError):
    """A session store filesystem operation failed."""

    def __init__(self, message: str, session_id: Optional[str] = None):
        self.session_id = session_id
        super().__init__(message)
