"""
Typed events emitted by the room protocol client.
Consumers receive them on a single channel and dispatch by type.
"""
from dataclasses import dataclass, field
from typing import List

from photogether.signaling.messages import IceCandidate, RoomIdentity, SessionDescription


@dataclass(frozen=True)
class RoomCreated:
    identity: RoomIdentity


@dataclass(frozen=True)
class RoomJoined:
    room_id: str
    local_peer_id: str
    peers: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class NewPeerObserved:
    peer_id: str


@dataclass(frozen=True)
class RemoteDescriptionReceived:
    message: SessionDescription


@dataclass(frozen=True)
class RemoteCandidateReceived:
    message: IceCandidate


@dataclass(frozen=True)
class RelayConnectionLost:
    reason: str = ""
