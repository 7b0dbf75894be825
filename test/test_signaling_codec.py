"""
Tests for the relay wire codec.
"""
import base64
import json

import pytest

from photogether.core.exceptions import DecodingError, EncodingError, UnknownMessageTypeError
from photogether.signaling.codec import SignalingCodec
from photogether.signaling.messages import (
    CreateRoomResponse,
    IceCandidate,
    JoinRoomRequest,
    JoinRoomResponse,
    MessageType,
    RoomRequest,
    SdpKind,
    SessionDescription,
)


def test_session_description_survives_the_wire():
    original = SessionDescription(
        kind=SdpKind.OFFER,
        sdp="v=0\r\no=- 4611731400430051336 2 IN IP4 127.0.0.1\r\n",
        sender_peer_id="U1",
        room_id="R1",
        receiver_peer_id="U2",
    )

    envelope = SignalingCodec.decode(SignalingCodec.encode(original))
    assert envelope.message_type is MessageType.SDP
    assert SignalingCodec.decode_payload(envelope.message, SessionDescription) == original


def test_ice_candidate_survives_the_wire():
    original = IceCandidate(
        sdp="candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx raddr 0.0.0.0 rport 0",
        sdp_mline_index=0,
        sdp_mid="0",
        sender_peer_id="U2",
        room_id="R1",
    )

    envelope = SignalingCodec.decode(SignalingCodec.encode(original))
    decoded = SignalingCodec.decode_payload(envelope.message, IceCandidate)
    assert decoded.sdp == original.sdp
    assert decoded.sdp_mline_index == 0
    assert decoded.sdp_mid == "0"
    assert decoded.receiver_peer_id is None


def test_inner_payload_is_base64_json():
    data = SignalingCodec.encode(RoomRequest(MessageType.JOIN_ROOM, JoinRoomRequest(room_id="R1")))

    outer = json.loads(data)
    assert outer['messageType'] == "joinRoom"
    assert json.loads(base64.b64decode(outer['message'])) == {"roomID": "R1"}


def test_create_room_request_has_no_payload():
    envelope = SignalingCodec.decode(SignalingCodec.encode(RoomRequest(MessageType.CREATE_ROOM)))

    assert envelope.message_type is MessageType.CREATE_ROOM
    assert envelope.message is None


def test_room_responses_decode_to_typed_payloads():
    create = SignalingCodec.decode(SignalingCodec.encode(CreateRoomResponse(room_id="R1", host_id="U1")))
    join = SignalingCodec.decode(SignalingCodec.encode(JoinRoomResponse(user_id="U2", user_list=["U1"])))

    identity = SignalingCodec.decode_payload(create.message, CreateRoomResponse).to_identity()
    assert (identity.room_id, identity.host_user_id) == ("R1", "U1")
    assert SignalingCodec.decode_payload(join.message, JoinRoomResponse).user_list == ["U1"]


@pytest.mark.parametrize("data", [
    b"not json",
    b"[1, 2, 3]",
    b'{"message": "e30="}',
    b'{"messageType": 7}',
    b'{"messageType": "sdp", "message": "%%%"}',
])
def test_malformed_envelopes_are_rejected(data):
    with pytest.raises(DecodingError):
        SignalingCodec.decode(data)


def test_unknown_message_type_is_kept_opaque():
    envelope = SignalingCodec.decode(b'{"messageType": "leaveRoom"}')

    assert envelope.message_type is None
    assert envelope.type_name == "leaveRoom"
    with pytest.raises(UnknownMessageTypeError):
        SignalingCodec.require_known(envelope)


def test_payload_with_wrong_field_type_fails_only_its_decode():
    inner = json.dumps({"userID": "U2", "userList": "U1"}).encode()
    data = SignalingCodec.encode_envelope(MessageType.JOIN_ROOM, inner)

    envelope = SignalingCodec.decode(data)
    with pytest.raises(DecodingError):
        SignalingCodec.decode_payload(envelope.message, JoinRoomResponse)


def test_missing_payload_is_a_decoding_error():
    with pytest.raises(DecodingError):
        SignalingCodec.decode_payload(None, SessionDescription)


def test_line_index_outside_int32_cannot_be_encoded():
    candidate = IceCandidate(sdp="candidate:1 1 udp 1 10.0.0.1 9 typ host", sdp_mline_index=2 ** 31)

    with pytest.raises(EncodingError):
        SignalingCodec.encode(candidate)


def test_non_payload_objects_cannot_be_encoded():
    with pytest.raises(EncodingError):
        SignalingCodec.encode({"messageType": "sdp"})
