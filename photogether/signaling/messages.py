"""
Typed relay messages.
Room requests/responses and negotiation messages exchanged through the relay server.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from photogether.core.exceptions import DecodingError
from photogether.core.validation_utils import ValidationUtils


class MessageType(str, Enum):
    """Outer envelope discriminator."""
    CREATE_ROOM = "createRoom"
    JOIN_ROOM = "joinRoom"
    NOTIFY_NEW_USER = "notifyNewUser"
    SDP = "sdp"
    ICE_CANDIDATE = "iceCandidate"


class SdpKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"


def _check(data: Any, cls_name: str, required: List[str], types: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise DecodingError(f"{cls_name} payload must be an object", {"type": type(data).__name__})
    error = (ValidationUtils.validate_required_fields(data, required)
             or ValidationUtils.validate_field_types(data, types))
    if error:
        raise DecodingError(f"Invalid {cls_name} payload: {error}")
    return data


@dataclass
class RoomEnvelope:
    """Outer wire message. The payload stays opaque until dispatched by type."""
    type_name: str
    message: Optional[bytes] = None

    @property
    def message_type(self) -> Optional[MessageType]:
        """Known message type, or None for types this client does not handle."""
        try:
            return MessageType(self.type_name)
        except ValueError:
            return None


@dataclass
class RoomRequest:
    """A room-level request; payload is None for requests without a body (createRoom)."""
    message_type: MessageType
    payload: Optional[Any] = None


@dataclass(frozen=True)
class RoomIdentity:
    room_id: str
    host_user_id: str


@dataclass
class CreateRoomResponse:
    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.CREATE_ROOM

    room_id: str
    host_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {'roomID': self.room_id, 'hostID': self.host_id}

    @classmethod
    def from_dict(cls, data: Any) -> "CreateRoomResponse":
        data = _check(data, cls.__name__, ['roomID', 'hostID'], {'roomID': str, 'hostID': str})
        return cls(room_id=data['roomID'], host_id=data['hostID'])

    def to_identity(self) -> RoomIdentity:
        return RoomIdentity(room_id=self.room_id, host_user_id=self.host_id)


@dataclass
class JoinRoomRequest:
    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.JOIN_ROOM

    room_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {'roomID': self.room_id}

    @classmethod
    def from_dict(cls, data: Any) -> "JoinRoomRequest":
        data = _check(data, cls.__name__, ['roomID'], {'roomID': str})
        return cls(room_id=data['roomID'])


@dataclass
class JoinRoomResponse:
    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.JOIN_ROOM

    user_id: str
    user_list: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'userID': self.user_id, 'userList': list(self.user_list)}

    @classmethod
    def from_dict(cls, data: Any) -> "JoinRoomResponse":
        data = _check(data, cls.__name__, ['userID', 'userList'], {'userID': str, 'userList': list})
        error = ValidationUtils.validate_string_list(data, 'userList')
        if error:
            raise DecodingError(f"Invalid {cls.__name__} payload: {error}")
        return cls(user_id=data['userID'], user_list=list(data['userList']))


@dataclass
class NotifyNewUser:
    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.NOTIFY_NEW_USER

    new_user_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {'newUserID': self.new_user_id}

    @classmethod
    def from_dict(cls, data: Any) -> "NotifyNewUser":
        data = _check(data, cls.__name__, ['newUserID'], {'newUserID': str})
        return cls(new_user_id=data['newUserID'])


@dataclass
class SessionDescription:
    """Offer or answer SDP, routed by sender (and optionally receiver) peer ID."""
    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.SDP

    kind: SdpKind
    sdp: str
    sender_peer_id: str = ""
    room_id: str = ""
    receiver_peer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'kind': SdpKind(self.kind).value,
            'sdp': self.sdp,
            'senderUserID': self.sender_peer_id,
            'roomID': self.room_id,
        }
        if self.receiver_peer_id is not None:
            data['receiverUserID'] = self.receiver_peer_id
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "SessionDescription":
        data = _check(data, cls.__name__, ['kind', 'sdp', 'senderUserID', 'roomID'], {
            'kind': str, 'sdp': str, 'senderUserID': str, 'roomID': str, 'receiverUserID': str
        })
        try:
            kind = SdpKind(data['kind'])
        except ValueError:
            raise DecodingError(f"Invalid {cls.__name__} payload: unknown kind", {"kind": data['kind']})
        return cls(
            kind=kind,
            sdp=data['sdp'],
            sender_peer_id=data['senderUserID'],
            room_id=data['roomID'],
            receiver_peer_id=data.get('receiverUserID')
        )


@dataclass
class IceCandidate:
    """A single trickled ICE candidate."""
    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.ICE_CANDIDATE

    sdp: str
    sdp_mline_index: int
    sdp_mid: Optional[str] = None
    sender_peer_id: str = ""
    room_id: str = ""
    receiver_peer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'sdp': self.sdp,
            'sdpMLineIndex': self.sdp_mline_index,
            'sdpMid': self.sdp_mid,
            'senderUserID': self.sender_peer_id,
            'roomID': self.room_id,
        }
        if self.receiver_peer_id is not None:
            data['receiverUserID'] = self.receiver_peer_id
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "IceCandidate":
        data = _check(data, cls.__name__, ['sdp', 'sdpMLineIndex', 'senderUserID', 'roomID'], {
            'sdp': str, 'sdpMLineIndex': int, 'sdpMid': str,
            'senderUserID': str, 'roomID': str, 'receiverUserID': str
        })
        if not -2 ** 31 <= data['sdpMLineIndex'] < 2 ** 31:
            raise DecodingError(f"Invalid {cls.__name__} payload: sdpMLineIndex out of int32 range")
        return cls(
            sdp=data['sdp'],
            sdp_mline_index=data['sdpMLineIndex'],
            sdp_mid=data.get('sdpMid'),
            sender_peer_id=data['senderUserID'],
            room_id=data['roomID'],
            receiver_peer_id=data.get('receiverUserID')
        )


# Negotiation messages relayed between peers
NegotiationMessage = (SessionDescription, IceCandidate)
