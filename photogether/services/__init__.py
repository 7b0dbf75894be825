"""
Services module for PhotoGether.
Handles shared sticker state between peers.
"""

from .sticker_sync_service import Frame, SharedObject, StickerSyncService, is_sticker_message

__all__ = [
    'Frame',
    'SharedObject',
    'StickerSyncService',
    'is_sticker_message'
]
