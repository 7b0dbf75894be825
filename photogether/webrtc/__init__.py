"""
Peer connection orchestration and media transport engines.
"""

from .media_engine import (
    MediaTransportEngine,
    AiortcMediaEngine,
    LocalCandidateGenerated,
    ConnectionStateChanged,
    DataChannelOpened,
    DataReceived,
    RemoteTrackReceived,
)
from .peer_session import PeerSession, NegotiationRole, NegotiationState
from .data_channel import DataChannelManager
from .peer_manager import PeerConnectionOrchestrator

__all__ = [
    'MediaTransportEngine',
    'AiortcMediaEngine',
    'LocalCandidateGenerated',
    'ConnectionStateChanged',
    'DataChannelOpened',
    'DataReceived',
    'RemoteTrackReceived',
    'PeerSession',
    'NegotiationRole',
    'NegotiationState',
    'DataChannelManager',
    'PeerConnectionOrchestrator',
]
