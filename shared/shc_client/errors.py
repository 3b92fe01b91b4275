"""Error taxonomy for the SHC client.

Everything except StartupFatalError is recoverable: callers log it and retry
or skip the affected event.
"""

BODY_PREVIEW_CHARS = 500


class ShcError(Exception):
    """Base class for all controller client errors."""


class StartupFatalError(ShcError):
    """Certificate material is missing, unreadable or does not form a key pair."""


class TransportError(ShcError):
    """Network or TLS failure talking to the controller."""


class ProtocolError(ShcError):
    """Response body could not be decoded into the expected shape."""

    def __init__(self, message: str, body: bytes = b"") -> None:
        super().__init__(message)
        self.body = body

    @property
    def body_preview(self) -> str:
        return self.body[:BODY_PREVIEW_CHARS].decode("utf-8", errors="replace")


class RpcCallError(ShcError):
    """The controller answered a JSON-RPC call with a non-zero error code."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(f"RPC error {code}: {message or '<empty message>'}")
        self.code = code
        self.message = message


class SessionInvalidError(RpcCallError):
    """A long-poll was rejected; the subscription token is presumed invalid."""


class EventContractError(ShcError):
    """An event's state lacks a required field or carries the wrong type."""
