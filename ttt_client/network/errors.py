"""Error taxonomy for the network layer."""


class NetworkError(Exception):
    """Base class for every failure the network layer reports."""


class AuthError(NetworkError):
    """Credential rejected by the server. Not retried."""


class SocketError(NetworkError):
    """Transport-level failure: refused, timed out, closed mid-request."""


class NotConnected(NetworkError):
    """Operation needs a live connection and there is none."""


class NoSession(NetworkError):
    """Reconnect requested before any successful authentication."""


class DecodeError(NetworkError):
    """Inbound payload could not be decoded."""


class ServerError(NetworkError):
    """Request rejected by the server with an error code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self):
        if self.code:
            return f"{self.message} ({self.code})"
        return self.message
