"""
Relay server for PhotoGether rooms.

Allocates rooms and user IDs, announces newcomers to existing members, and
forwards negotiation messages between members of the same room. The relay
never looks inside SDP or candidates; it only reads the routing fields.
"""
import asyncio
import datetime
import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from aiohttp import web

from photogether.core.config import PhotoGetherConfig
from photogether.core.exceptions import DecodingError, EncodingError, UnknownMessageTypeError
from photogether.core.logging import LoggerMixin, debug_log, setup_logging
from photogether.signaling.codec import SignalingCodec
from photogether.signaling.messages import (
    CreateRoomResponse,
    IceCandidate,
    JoinRoomRequest,
    JoinRoomResponse,
    MessageType,
    NotifyNewUser,
    SessionDescription,
)


@dataclass(eq=False)
class RelayConnection:
    """One relay WebSocket and the room membership it holds, if any."""
    connection_id: str
    ws: web.WebSocketResponse
    binary: bool = True
    room_id: Optional[str] = None
    user_id: Optional[str] = None


class RelayServer(LoggerMixin):
    """Room bookkeeping and message forwarding for the relay."""

    def __init__(self, config: Optional[PhotoGetherConfig] = None, codec: SignalingCodec = SignalingCodec):
        super().__init__()
        self.config = config or PhotoGetherConfig()
        self.codec = codec

        self.rooms: Dict[str, Dict[str, RelayConnection]] = {}
        self.connections: Dict[str, RelayConnection] = {}

        self.relay_stats = {
            'total_messages': 0,
            'messages_by_type': defaultdict(int),
            'forwarded': 0,
            'dropped': 0,
            'rooms_created': 0,
            'start_time': datetime.datetime.now()
        }

        self._handlers = {
            MessageType.CREATE_ROOM: self._handle_create_room,
            MessageType.JOIN_ROOM: self._handle_join_room,
            MessageType.NOTIFY_NEW_USER: self._handle_client_notification,
            MessageType.SDP: self._handle_session_description,
            MessageType.ICE_CANDIDATE: self._handle_ice_candidate,
        }

        debug_log(f"🚀 [Relay] Relay server initialized")

    def create_app(self) -> web.Application:
        """Build the aiohttp application serving the relay."""
        app = web.Application()
        app['relay'] = self
        app.router.add_get("/ws", handle_websocket)
        app.router.add_get("/status", handle_status)
        app.on_shutdown.append(self._on_shutdown)
        return app

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def add_connection(self, ws: web.WebSocketResponse) -> RelayConnection:
        connection = RelayConnection(connection_id=str(uuid.uuid4()), ws=ws)
        self.connections[connection.connection_id] = connection
        debug_log(f"✅ [Relay] Client connected", {
            "connection_id": connection.connection_id,
            "total_connections": len(self.connections)
        })
        return connection

    def remove_connection(self, connection: RelayConnection):
        """Drop a closed connection and its room membership."""
        self.connections.pop(connection.connection_id, None)
        self._leave_room(connection)
        debug_log(f"🔌 [Relay] Client disconnected", {
            "connection_id": connection.connection_id,
            "total_connections": len(self.connections)
        })

    def _leave_room(self, connection: RelayConnection):
        room_id, user_id = connection.room_id, connection.user_id
        connection.room_id = None
        connection.user_id = None
        if room_id is None:
            return

        members = self.rooms.get(room_id)
        if members is None:
            return
        members.pop(user_id, None)
        if not members:
            del self.rooms[room_id]
            debug_log(f"🧹 [Relay] Empty room removed", {"room_id": room_id})

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_message(self, connection: RelayConnection, data: bytes):
        """Route one inbound relay payload."""
        self.relay_stats['total_messages'] += 1
        try:
            envelope = self.codec.decode(data)
        except DecodingError as e:
            self.relay_stats['dropped'] += 1
            self.log_error(f"Failed to decode relay message", {
                "connection_id": connection.connection_id,
                "error": str(e)
            })
            return

        self.relay_stats['messages_by_type'][envelope.type_name] += 1
        try:
            message_type = self.codec.require_known(envelope)
        except UnknownMessageTypeError as e:
            self.relay_stats['dropped'] += 1
            self.log_warning(f"Dropping message with unknown messageType", {
                "connection_id": connection.connection_id,
                "error": str(e)
            })
            return

        try:
            await self._handlers[message_type](connection, envelope.message, data)
        except (DecodingError, EncodingError) as e:
            self.relay_stats['dropped'] += 1
            self.log_error(f"Invalid {message_type.value} message", {
                "connection_id": connection.connection_id,
                "error": str(e)
            })

    async def _handle_create_room(self, connection: RelayConnection, message: Optional[bytes], raw: bytes):
        self._leave_room(connection)

        room_id = str(uuid.uuid4())
        host_id = str(uuid.uuid4())
        self.rooms[room_id] = {host_id: connection}
        connection.room_id = room_id
        connection.user_id = host_id
        self.relay_stats['rooms_created'] += 1

        debug_log(f"🏠 [Relay] Room created", {
            "room_id": room_id,
            "host_id": host_id,
            "total_rooms": len(self.rooms)
        })
        await self._send(connection, self.codec.encode(CreateRoomResponse(room_id=room_id, host_id=host_id)))

    async def _handle_join_room(self, connection: RelayConnection, message: Optional[bytes], raw: bytes):
        request = self.codec.decode_payload(message, JoinRoomRequest)
        members = self.rooms.get(request.room_id)
        if members is None:
            self.relay_stats['dropped'] += 1
            self.log_warning(f"Join request for unknown room", {
                "connection_id": connection.connection_id,
                "room_id": request.room_id
            })
            return
        if connection.room_id == request.room_id:
            self.log_warning(f"Join request for a room the client is already in", {
                "connection_id": connection.connection_id,
                "room_id": request.room_id
            })
            return

        self._leave_room(connection)
        existing = list(members.values())
        user_id = str(uuid.uuid4())
        members[user_id] = connection
        connection.room_id = request.room_id
        connection.user_id = user_id

        debug_log(f"👋 [Relay] User joined room", {
            "room_id": request.room_id,
            "user_id": user_id,
            "room_size": len(members)
        })

        response = JoinRoomResponse(user_id=user_id, user_list=[member.user_id for member in existing])
        await self._send(connection, self.codec.encode(response))

        notification = self.codec.encode(NotifyNewUser(new_user_id=user_id))
        for member in existing:
            await self._send(member, notification)

    async def _handle_client_notification(self, connection: RelayConnection, message: Optional[bytes], raw: bytes):
        # Only the relay announces newcomers
        self.relay_stats['dropped'] += 1
        self.log_warning(f"Ignoring notifyNewUser sent by a client", {"connection_id": connection.connection_id})

    async def _handle_session_description(self, connection: RelayConnection, message: Optional[bytes], raw: bytes):
        description = self.codec.decode_payload(message, SessionDescription)
        await self._forward(connection, description.room_id, description.receiver_peer_id, raw)

    async def _handle_ice_candidate(self, connection: RelayConnection, message: Optional[bytes], raw: bytes):
        candidate = self.codec.decode_payload(message, IceCandidate)
        await self._forward(connection, candidate.room_id, candidate.receiver_peer_id, raw)

    async def _forward(self, connection: RelayConnection, room_id: str, receiver_id: Optional[str], raw: bytes):
        """Forward a negotiation message verbatim within the sender's room."""
        if connection.room_id is None or connection.room_id != room_id:
            self.relay_stats['dropped'] += 1
            self.log_warning(f"Dropping negotiation message outside the sender's room", {
                "connection_id": connection.connection_id,
                "room_id": room_id
            })
            return

        members = self.rooms.get(room_id, {})
        if receiver_id is not None:
            targets = [members[receiver_id]] if receiver_id in members else []
        else:
            targets = [member for user_id, member in members.items() if user_id != connection.user_id]

        if not targets:
            self.relay_stats['dropped'] += 1
            self.log_debug(f"No recipient for negotiation message", {
                "room_id": room_id,
                "receiver": receiver_id
            })
            return

        for target in targets:
            if await self._send(target, raw):
                self.relay_stats['forwarded'] += 1

    async def _send(self, connection: RelayConnection, data: bytes) -> bool:
        """Send in the frame kind the client itself uses."""
        try:
            if connection.binary:
                await connection.ws.send_bytes(data)
            else:
                await connection.ws.send_str(data.decode('utf-8'))
            return True
        except ConnectionResetError as e:
            self.log_warning(f"Failed to send to relay client", {
                "connection_id": connection.connection_id,
                "error": str(e)
            })
            return False

    # ------------------------------------------------------------------
    # Status and shutdown
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        uptime = datetime.datetime.now() - self.relay_stats['start_time']

        return {
            'server_type': 'relay',
            'connections': len(self.connections),
            'rooms': {room_id: len(members) for room_id, members in self.rooms.items()},
            'total_messages': self.relay_stats['total_messages'],
            'messages_by_type': dict(self.relay_stats['messages_by_type']),
            'forwarded': self.relay_stats['forwarded'],
            'dropped': self.relay_stats['dropped'],
            'rooms_created': self.relay_stats['rooms_created'],
            'uptime_seconds': uptime.total_seconds()
        }

    async def _on_shutdown(self, app: web.Application):
        await self.cleanup()

    async def cleanup(self):
        """Close every client connection."""
        debug_log(f"🧹 [Relay] Cleaning up relay server")
        for connection in list(self.connections.values()):
            await connection.ws.close()
        self.connections.clear()
        self.rooms.clear()
        debug_log(f"🧹 [Relay] Relay cleanup completed")


async def handle_websocket(request):
    """Serve one relay client over a WebSocket."""
    relay: RelayServer = request.app['relay']

    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    connection = relay.add_connection(ws)

    try:
        async for msg in ws:
            if msg.type == web.WSMsgType.BINARY:
                connection.binary = True
                await relay.handle_message(connection, msg.data)
            elif msg.type == web.WSMsgType.TEXT:
                connection.binary = False
                await relay.handle_message(connection, msg.data.encode('utf-8'))
            elif msg.type == web.WSMsgType.ERROR:
                debug_log(f"❌ [Relay] WebSocket error", {
                    "connection_id": connection.connection_id,
                    "error": str(ws.exception())
                })
                break
    finally:
        relay.remove_connection(connection)

    return ws


async def handle_status(request):
    """Handle status request."""
    relay: RelayServer = request.app['relay']
    return web.Response(
        content_type="application/json",
        text=json.dumps(relay.get_status())
    )


async def main():
    """Run the relay server until cancelled."""
    config = PhotoGetherConfig()
    setup_logging(level=config.log_level, log_file="photogether_relay.log")
    debug_log(f"🚀 [Main] Starting PhotoGether relay")

    relay = RelayServer(config)
    runner = web.AppRunner(relay.create_app())
    await runner.setup()

    try:
        site = web.TCPSite(runner, config.relay_host, config.relay_port)
        await site.start()

        debug_log(f"✅ [Main] Relay listening", {
            "host": config.relay_host,
            "port": config.relay_port
        })
        print(f"PhotoGether relay started at ws://{config.relay_host}:{config.relay_port}/ws")

        # Run forever
        await asyncio.Future()
    finally:
        await runner.cleanup()


def run():
    """Console entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
