"""
PhotoGether peer connection core.
Room coordination, WebRTC negotiation and shared sticker state over data channels.
"""

__version__ = "0.1.0"
