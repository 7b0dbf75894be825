"""
Messaging module for PhotoGether.
Serializes state transitions onto a single worker.
"""

from .dispatcher import SerialDispatcher

__all__ = [
    'SerialDispatcher'
]
