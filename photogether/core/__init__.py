"""
Core module for PhotoGether.
Contains configuration, logging, and common utilities.
"""

from .config import PhotoGetherConfig
from .logging import setup_logging, debug_log, LoggerMixin
from .exceptions import (
    PhotoGetherError,
    EncodingError,
    DecodingError,
    UnknownMessageTypeError,
    TransportError,
    ConnectionLostError,
    RoomError,
    RoomRequestTimeoutError,
    MediaTransportError,
    NegotiationError,
    NegotiationTimeoutError,
    OwnershipError,
)

__all__ = [
    'PhotoGetherConfig',
    'setup_logging',
    'debug_log',
    'LoggerMixin',
    'PhotoGetherError',
    'EncodingError',
    'DecodingError',
    'UnknownMessageTypeError',
    'TransportError',
    'ConnectionLostError',
    'RoomError',
    'RoomRequestTimeoutError',
    'MediaTransportError',
    'NegotiationError',
    'NegotiationTimeoutError',
    'OwnershipError'
]
