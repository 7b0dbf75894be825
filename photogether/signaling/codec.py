"""
Signaling codec for the relay wire format.

Envelope: ``{"messageType": <str>, "message": <base64 of inner JSON>?}``.
Decoding is two-phase: ``decode`` recovers the type and the opaque payload
bytes, ``decode_payload`` turns those bytes into the type chosen by the caller.
A bad payload only ever fails its own message.
"""
import base64
import binascii
import json
from typing import Any, Optional, Type, TypeVar, Union

from photogether.core.exceptions import DecodingError, EncodingError, UnknownMessageTypeError
from photogether.signaling.messages import MessageType, RoomEnvelope, RoomRequest

T = TypeVar("T")


class SignalingCodec:
    """Encodes typed relay messages to bytes and decodes them back."""

    @staticmethod
    def encode(message: Any) -> bytes:
        """Encode a RoomRequest or a typed payload (anything with MESSAGE_TYPE and to_dict)."""
        if isinstance(message, RoomRequest):
            message_type, payload = message.message_type, message.payload
        else:
            message_type = getattr(message, 'MESSAGE_TYPE', None)
            payload = message
            if message_type is None:
                raise EncodingError("Unsupported message object", {"type": type(message).__name__})

        try:
            message_type = MessageType(message_type)
        except ValueError:
            raise EncodingError("Unknown message type", {"message_type": str(message_type)})

        inner = None
        if payload is not None:
            inner = SignalingCodec.encode_payload(payload)
        return SignalingCodec.encode_envelope(message_type, inner)

    @staticmethod
    def encode_payload(payload: Any) -> bytes:
        """Serialize and validate an inner payload."""
        try:
            data = payload.to_dict()
            # Validate against the same schema the receiver applies
            type(payload).from_dict(data)
            return json.dumps(data, allow_nan=False, separators=(',', ':')).encode('utf-8')
        except DecodingError as e:
            raise EncodingError(f"Payload failed validation: {e}", {"type": type(payload).__name__})
        except (AttributeError, TypeError, ValueError) as e:
            raise EncodingError(f"Payload could not be serialized: {e}", {"type": type(payload).__name__})

    @staticmethod
    def encode_envelope(message_type: Union[MessageType, str], inner: Optional[bytes] = None) -> bytes:
        """Wrap already-encoded payload bytes in the outer envelope."""
        envelope = {'messageType': MessageType(message_type).value}
        if inner is not None:
            envelope['message'] = base64.b64encode(inner).decode('ascii')
        return json.dumps(envelope, separators=(',', ':')).encode('utf-8')

    @staticmethod
    def decode(data: Union[bytes, str]) -> RoomEnvelope:
        """First phase: recover messageType and the opaque payload bytes."""
        try:
            envelope = json.loads(data)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodingError(f"Envelope is not valid JSON: {e}")

        if not isinstance(envelope, dict):
            raise DecodingError("Envelope must be an object", {"type": type(envelope).__name__})

        type_name = envelope.get('messageType')
        if not isinstance(type_name, str):
            raise DecodingError("Envelope missing messageType", {"keys": list(envelope.keys())})

        message = envelope.get('message')
        if message is None:
            return RoomEnvelope(type_name=type_name)
        if not isinstance(message, str):
            raise DecodingError("Envelope message must be a base64 string", {"messageType": type_name})
        try:
            raw = base64.b64decode(message, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodingError(f"Envelope message is not valid base64: {e}", {"messageType": type_name})
        return RoomEnvelope(type_name=type_name, message=raw)

    @staticmethod
    def require_known(envelope: RoomEnvelope) -> MessageType:
        """Return the envelope's MessageType or raise UnknownMessageTypeError."""
        message_type = envelope.message_type
        if message_type is None:
            raise UnknownMessageTypeError("Unknown messageType", {"messageType": envelope.type_name})
        return message_type

    @staticmethod
    def decode_payload(message: Optional[bytes], expected_type: Type[T]) -> T:
        """Second phase: decode payload bytes into the type selected by messageType."""
        if message is None:
            raise DecodingError("Missing payload", {"expected": expected_type.__name__})
        try:
            data = json.loads(message)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodingError(f"Payload is not valid JSON: {e}", {"expected": expected_type.__name__})
        return expected_type.from_dict(data)
