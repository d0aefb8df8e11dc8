"""Exceptions raised by the discovery and download services."""


class LocalSendError(Exception):
    pass


class DiscoveryTransportError(LocalSendError):
    """Raised when the multicast socket cannot be bound or the group joined."""


class MessageDecodeError(LocalSendError):
    """Raised when a datagram is not a valid multicast announce/response."""


class HandshakeError(LocalSendError):
    """
    Possible failures of the prepare-download request.
    """

    reason = "Prepare-download failed"

    def __init__(self, message: str | None = None, status: int | None = None):
        super().__init__(message or self.reason)
        self.status = status


class Unauthorized(HandshakeError):
    reason = "PIN required / Invalid PIN"


class Forbidden(HandshakeError):
    reason = "Rejected"


class RateLimited(HandshakeError):
    reason = "Too many requests"


class PeerError(HandshakeError):
    reason = "Unknown error by sender"


class UnexpectedStatus(HandshakeError):
    reason = "Unexpected response status"


class InvalidManifest(HandshakeError):
    reason = "Malformed prepare-download response"


class HandshakeConnectionError(HandshakeError):
    reason = "Could not reach sender"


class UnknownSessionError(LocalSendError):
    """Raised when a download session id has no pending manifest."""


class UnknownPeerError(LocalSendError):
    """Raised when a fingerprint is not in the peer registry."""


def handshake_error_for_status(status: int) -> HandshakeError:
    """Map a non-success prepare-download status to its error."""
    if status == 401:
        return Unauthorized(status=status)
    if status == 403:
        return Forbidden(status=status)
    if status == 429:
        return RateLimited(status=status)
    if 500 <= status < 600:
        return PeerError(status=status)
    return UnexpectedStatus(f"Unexpected response status {status}", status=status)
