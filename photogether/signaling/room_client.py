"""
Room protocol client.

Turns room intents (create, join) into relay requests and demultiplexes relay
traffic into typed events. Event sinks are called synchronously, in
registration order, exactly once per event.
"""
import asyncio
from typing import Any, Callable, List, Optional, Set, Tuple

from photogether.core.config import PhotoGetherConfig
from photogether.core.exceptions import (
    ConnectionLostError,
    DecodingError,
    RoomError,
    RoomRequestTimeoutError,
    TransportError,
    UnknownMessageTypeError,
)
from photogether.core.logging import LoggerMixin, debug_log
from photogether.signaling.codec import SignalingCodec
from photogether.signaling.events import (
    NewPeerObserved,
    RelayConnectionLost,
    RemoteCandidateReceived,
    RemoteDescriptionReceived,
    RoomCreated,
    RoomJoined,
)
from photogether.signaling.messages import (
    CreateRoomResponse,
    IceCandidate,
    JoinRoomRequest,
    JoinRoomResponse,
    MessageType,
    NotifyNewUser,
    RoomIdentity,
    RoomRequest,
    SessionDescription,
)


class RoomProtocolClient(LoggerMixin):
    """Client side of the relay room protocol."""

    def __init__(self, transport, config: Optional[PhotoGetherConfig] = None,
                 codec: SignalingCodec = SignalingCodec):
        super().__init__()
        self.transport = transport
        self.config = config
        self.codec = codec

        # Session state
        self.room_identity: Optional[RoomIdentity] = None
        self.room_id: Optional[str] = None
        self.local_peer_id: Optional[str] = None
        self._observed_peers: Set[str] = set()

        # Pending requests
        self._pending_create: Optional[asyncio.Future] = None
        self._pending_join: Optional[asyncio.Future] = None
        self._pending_join_room_id: Optional[str] = None

        self._event_sinks: List[Callable[[Any], Any]] = []
        self._receive_task: Optional[asyncio.Task] = None

        self._handlers = {
            MessageType.CREATE_ROOM: self._handle_create_room,
            MessageType.JOIN_ROOM: self._handle_join_room,
            MessageType.NOTIFY_NEW_USER: self._handle_notify_new_user,
            MessageType.SDP: self._handle_sdp,
            MessageType.ICE_CANDIDATE: self._handle_ice_candidate,
        }

        debug_log(f"🏠 [RoomClient] Room protocol client initialized")

    @property
    def request_timeout(self) -> Optional[float]:
        return self.config.request_timeout if self.config else None

    def add_event_sink(self, sink: Callable[[Any], Any]):
        """Register a consumer for room events."""
        self._event_sinks.append(sink)

    def remove_event_sink(self, sink: Callable[[Any], Any]):
        if sink in self._event_sinks:
            self._event_sinks.remove(sink)

    async def start(self):
        """Connect the relay transport and start demultiplexing inbound traffic."""
        self.transport.add_connection_callback('disconnected', self._on_transport_disconnected)
        await self.transport.connect()
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def create_room(self) -> RoomIdentity:
        """Ask the relay for a new room; resolves with the room identity."""
        if self._pending_create is not None:
            # Only one createRoom may be in flight; share it
            return await self._await_response(self._pending_create, '_pending_create', MessageType.CREATE_ROOM)

        data = self.codec.encode(RoomRequest(MessageType.CREATE_ROOM))

        future = asyncio.get_running_loop().create_future()
        self._pending_create = future
        await self._send_request(data, '_pending_create')

        debug_log(f"📤 [RoomClient] createRoom sent")
        return await self._await_response(future, '_pending_create', MessageType.CREATE_ROOM)

    async def join_room(self, room_id: str) -> Tuple[str, List[str]]:
        """Join an existing room; resolves with (local peer ID, existing peer IDs)."""
        if self.room_id is not None:
            raise RoomError("Already in a room", {"room_id": self.room_id})
        if self._pending_join is not None:
            raise RoomError("A joinRoom request is already pending", {"room_id": self._pending_join_room_id})

        data = self.codec.encode(RoomRequest(MessageType.JOIN_ROOM, JoinRoomRequest(room_id=room_id)))

        future = asyncio.get_running_loop().create_future()
        self._pending_join = future
        self._pending_join_room_id = room_id
        await self._send_request(data, '_pending_join')

        debug_log(f"📤 [RoomClient] joinRoom sent", {"room_id": room_id})
        return await self._await_response(future, '_pending_join', MessageType.JOIN_ROOM)

    async def send_session_description(self, description: SessionDescription, receiver_peer_id: Optional[str] = None):
        """Relay a local offer/answer to a peer."""
        description.sender_peer_id = self.local_peer_id or ""
        description.room_id = self.room_id or ""
        description.receiver_peer_id = receiver_peer_id
        await self.transport.send(self.codec.encode(description))

        debug_log(f"📤 [RoomClient] SDP sent", {
            "kind": description.kind.value,
            "receiver": receiver_peer_id,
            "sdp_length": len(description.sdp)
        })

    async def send_ice_candidate(self, candidate: IceCandidate, receiver_peer_id: Optional[str] = None):
        """Relay a local ICE candidate to a peer."""
        candidate.sender_peer_id = self.local_peer_id or ""
        candidate.room_id = self.room_id or ""
        candidate.receiver_peer_id = receiver_peer_id
        await self.transport.send(self.codec.encode(candidate))

        debug_log(f"🧊 [RoomClient] ICE candidate sent", {
            "receiver": receiver_peer_id,
            "sdp_mid": candidate.sdp_mid,
            "sdp_mline_index": candidate.sdp_mline_index
        }, "DEBUG")

    async def _send_request(self, data: bytes, pending_attr: str):
        try:
            await self.transport.send(data)
        except TransportError:
            setattr(self, pending_attr, None)
            raise

    async def _await_response(self, future: asyncio.Future, pending_attr: str, message_type: MessageType):
        try:
            if self.request_timeout:
                return await asyncio.wait_for(asyncio.shield(future), self.request_timeout)
            return await asyncio.shield(future)
        except asyncio.TimeoutError:
            if not future.done():
                future.cancel()
            raise RoomRequestTimeoutError(f"No {message_type.value} response from relay", {
                "timeout": self.request_timeout
            })
        finally:
            if getattr(self, pending_attr) is future and future.done():
                setattr(self, pending_attr, None)

    async def _receive_loop(self):
        """Demultiplex inbound relay payloads; one bad message never stops the loop."""
        async for data in self.transport.receive():
            self.handle_incoming(data)

        debug_log(f"🔌 [RoomClient] Relay receive stream ended")
        self._fail_pending(ConnectionLostError("Relay connection closed"))

    def handle_incoming(self, data: bytes):
        """Decode and route a single inbound payload."""
        try:
            envelope = self.codec.decode(data)
            self._handlers[self.codec.require_known(envelope)](envelope.message)
        except UnknownMessageTypeError as e:
            self.log_warning(f"Dropping message with unknown messageType", {"error": str(e)})
        except DecodingError as e:
            self.log_error(f"Failed to decode relay message", {
                "error": str(e),
                "length": len(data) if data is not None else 0
            })

    def _handle_create_room(self, message: Optional[bytes]):
        response = self.codec.decode_payload(message, CreateRoomResponse)
        future = self._pending_create
        if future is None or future.done():
            self.log_warning(f"Unexpected createRoom response", {"room_id": response.room_id})
            return

        identity = response.to_identity()
        self.room_identity = identity
        self.room_id = identity.room_id
        self.local_peer_id = identity.host_user_id
        self._observed_peers.clear()

        debug_log(f"✅ [RoomClient] Room created", {"room_id": identity.room_id, "host_id": identity.host_user_id})
        future.set_result(identity)
        self._emit(RoomCreated(identity=identity))

    def _handle_join_room(self, message: Optional[bytes]):
        response = self.codec.decode_payload(message, JoinRoomResponse)
        future = self._pending_join
        if future is None or future.done():
            self.log_warning(f"Unexpected joinRoom response", {"user_id": response.user_id})
            return

        self.room_id = self._pending_join_room_id
        self.local_peer_id = response.user_id
        peers = [peer_id for peer_id in response.user_list if peer_id != response.user_id]
        self._observed_peers = set(peers)

        debug_log(f"✅ [RoomClient] Room joined", {
            "room_id": self.room_id,
            "user_id": response.user_id,
            "user_list": peers
        })
        future.set_result((response.user_id, peers))
        self._emit(RoomJoined(room_id=self.room_id, local_peer_id=response.user_id, peers=list(peers)))

    def _handle_notify_new_user(self, message: Optional[bytes]):
        notification = self.codec.decode_payload(message, NotifyNewUser)
        peer_id = notification.new_user_id
        if self.room_id is None:
            self.log_debug(f"Ignoring new user notification outside a room", {"peer_id": peer_id})
            return
        if peer_id == self.local_peer_id or peer_id in self._observed_peers:
            self.log_debug(f"Ignoring repeated new user notification", {"peer_id": peer_id})
            return

        self._observed_peers.add(peer_id)
        debug_log(f"👋 [RoomClient] New peer observed", {"peer_id": peer_id})
        self._emit(NewPeerObserved(peer_id=peer_id))

    def _handle_sdp(self, message: Optional[bytes]):
        description = self.codec.decode_payload(message, SessionDescription)
        if self._is_routed_here(description.room_id, description.receiver_peer_id, description.sender_peer_id):
            self._emit(RemoteDescriptionReceived(message=description))

    def _handle_ice_candidate(self, message: Optional[bytes]):
        candidate = self.codec.decode_payload(message, IceCandidate)
        if self._is_routed_here(candidate.room_id, candidate.receiver_peer_id, candidate.sender_peer_id):
            self._emit(RemoteCandidateReceived(message=candidate))

    def _is_routed_here(self, room_id: str, receiver_peer_id: Optional[str], sender_peer_id: str) -> bool:
        if self.room_id is None:
            self.log_debug(f"Dropping negotiation message outside a room", {"room_id": room_id})
            return False
        if room_id != self.room_id:
            self.log_warning(f"Dropping negotiation message for another room", {"room_id": room_id})
            return False
        if receiver_peer_id is not None and receiver_peer_id != self.local_peer_id:
            self.log_debug(f"Dropping negotiation message addressed to another peer", {"receiver": receiver_peer_id})
            return False
        if sender_peer_id == self.local_peer_id:
            return False
        return True

    def _emit(self, event: Any):
        for sink in list(self._event_sinks):
            try:
                sink(event)
            except Exception as e:
                self.log_error(f"Error in room event sink", {
                    "event": type(event).__name__,
                    "error": str(e),
                    "error_type": type(e).__name__
                })

    def _on_transport_disconnected(self, reason: str = ""):
        self._fail_pending(ConnectionLostError("Relay connection lost", {"reason": reason}))
        # The relay drops the membership with the connection; rejoin after reconnecting
        self._forget_room()
        self._emit(RelayConnectionLost(reason=reason))

    def _fail_pending(self, error: Exception):
        for attr in ('_pending_create', '_pending_join'):
            future = getattr(self, attr)
            if future is not None and not future.done():
                future.set_exception(error)
            setattr(self, attr, None)
        self._pending_join_room_id = None

    def leave(self):
        """Forget the current room so a new one can be created or joined.

        The relay keeps the membership until this connection joins or creates
        another room, or disconnects; traffic for the old room is dropped here.
        """
        debug_log(f"🚪 [RoomClient] Leaving room", {"room_id": self.room_id})
        self._forget_room()

    def _forget_room(self):
        self.room_identity = None
        self.room_id = None
        self.local_peer_id = None
        self._observed_peers.clear()

    async def close(self):
        """Stop demultiplexing and fail whatever is still pending."""
        self.transport.remove_connection_callback('disconnected', self._on_transport_disconnected)
        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        self._receive_task = None
        self._fail_pending(RoomError("Room client closed"))
