"""
Relay module for PhotoGether.
Room allocation and negotiation message forwarding over WebSockets.
"""

from .server import RelayServer, RelayConnection, main, run

__all__ = [
    'RelayServer',
    'RelayConnection',
    'main',
    'run'
]
