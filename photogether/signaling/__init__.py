"""
Relay signaling: wire codec, relay transport and room protocol client.
"""

from .codec import SignalingCodec
from .messages import (
    MessageType,
    SdpKind,
    RoomEnvelope,
    RoomRequest,
    RoomIdentity,
    CreateRoomResponse,
    JoinRoomRequest,
    JoinRoomResponse,
    NotifyNewUser,
    SessionDescription,
    IceCandidate,
)
from .events import (
    RoomCreated,
    RoomJoined,
    NewPeerObserved,
    RemoteDescriptionReceived,
    RemoteCandidateReceived,
    RelayConnectionLost,
)
from .relay_transport import RelayTransport
from .room_client import RoomProtocolClient

__all__ = [
    'SignalingCodec',
    'MessageType',
    'SdpKind',
    'RoomEnvelope',
    'RoomRequest',
    'RoomIdentity',
    'CreateRoomResponse',
    'JoinRoomRequest',
    'JoinRoomResponse',
    'NotifyNewUser',
    'SessionDescription',
    'IceCandidate',
    'RoomCreated',
    'RoomJoined',
    'NewPeerObserved',
    'RemoteDescriptionReceived',
    'RemoteCandidateReceived',
    'RelayConnectionLost',
    'RelayTransport',
    'RoomProtocolClient',
]
