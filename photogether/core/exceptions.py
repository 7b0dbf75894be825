"""
Custom exception classes for PhotoGether.
"""


class PhotoGetherError(Exception):
    """Base exception for PhotoGether."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{super().__str__()} - {self.details}"
        return super().__str__()


class EncodingError(PhotoGetherError):
    """Raised when an outgoing message cannot be serialized. Nothing is sent."""
    pass


class DecodingError(PhotoGetherError):
    """Raised when a received message fails schema validation."""
    pass


class UnknownMessageTypeError(DecodingError):
    """Raised when an envelope carries a messageType this client does not know."""
    pass


class TransportError(PhotoGetherError):
    """Raised when there's a relay connection-related error."""
    pass


class ConnectionLostError(TransportError):
    """Raised on pending requests when the relay connection drops."""
    pass


class RoomError(PhotoGetherError):
    """Raised when a room request cannot be issued or completed."""
    pass


class RoomRequestTimeoutError(RoomError):
    """Raised when the relay does not answer a room request in time."""
    pass


class MediaTransportError(PhotoGetherError):
    """Raised when the media transport engine fails to apply a description or candidate."""
    pass


class NegotiationError(PhotoGetherError):
    """Raised when a peer negotiation cannot proceed."""
    pass


class NegotiationTimeoutError(NegotiationError):
    """Raised when a peer does not reach the open state in time."""
    pass


class OwnershipError(PhotoGetherError):
    """Raised when a sticker is edited by a peer that does not own it."""
    pass
