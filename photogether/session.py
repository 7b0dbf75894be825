"""
Client session for PhotoGether.
Wires the relay transport, room protocol client, peer orchestrator and
sticker sync into one object an application drives.
"""
from typing import Any, AsyncIterator, Callable, List, Optional, Tuple

from photogether.core.config import PhotoGetherConfig
from photogether.core.logging import LoggerMixin, debug_log
from photogether.services.sticker_sync_service import StickerSyncService, is_sticker_message
from photogether.signaling.events import RoomCreated, RoomJoined
from photogether.signaling.messages import RoomIdentity
from photogether.signaling.relay_transport import RelayTransport
from photogether.signaling.room_client import RoomProtocolClient
from photogether.webrtc.media_engine import AiortcMediaEngine
from photogether.webrtc.peer_manager import EngineFactory, PeerConnectionOrchestrator


class PhotoGetherSession(LoggerMixin):
    """One participant: joins or hosts a room and keeps stickers in sync."""

    def __init__(self, config: Optional[PhotoGetherConfig] = None,
                 transport: Optional[Any] = None,
                 engine_factory: Optional[EngineFactory] = None,
                 local_tracks: Optional[List[Any]] = None,
                 local_media_handle: Optional[Any] = None):
        super().__init__()
        self.config = config or PhotoGetherConfig()
        self.transport = transport or RelayTransport(self.config)
        self.room_client = RoomProtocolClient(self.transport, self.config)

        if engine_factory is None:
            engine_factory = AiortcMediaEngine.factory(self.config, local_tracks)
        if local_media_handle is None and local_tracks:
            local_media_handle = local_tracks[0]

        self.orchestrator = PeerConnectionOrchestrator(
            self.room_client, engine_factory, self.config, local_media_handle
        )
        self.stickers: Optional[StickerSyncService] = None
        self.data_listeners: List[Callable[[str, bytes], None]] = []

        self.room_client.add_event_sink(self._on_room_event)
        self.orchestrator.add_data_listener(self._on_data)
        self.orchestrator.add_connection_callback('channel_ready', self._on_channel_ready)
        self.orchestrator.add_connection_callback('peer_closed', self._on_peer_closed)

        debug_log(f"🚀 [Session] PhotoGether session initialized", {"config": str(self.config)})

    async def start(self):
        """Start negotiation handling and connect to the relay."""
        await self.orchestrator.start()
        await self.room_client.start()

    async def close(self):
        """Leave the room and close the relay connection."""
        debug_log(f"🧹 [Session] Closing session")
        await self.orchestrator.stop()
        await self.room_client.close()
        await self.transport.close()
        self.stickers = None

    async def create_room(self) -> RoomIdentity:
        return await self.room_client.create_room()

    async def join_room(self, room_id: str) -> Tuple[str, List[str]]:
        """Join a room; negotiation with every listed peer starts immediately."""
        return await self.room_client.join_room(room_id)

    async def leave(self):
        await self.orchestrator.leave()
        self.stickers = None

    @property
    def local_peer_id(self) -> Optional[str]:
        return self.room_client.local_peer_id

    @property
    def room_id(self) -> Optional[str]:
        return self.room_client.room_id

    # ------------------------------------------------------------------
    # Data and media
    # ------------------------------------------------------------------

    def send_data(self, peer_id: str, data: bytes) -> bool:
        return self.orchestrator.send_bytes(peer_id, data)

    def broadcast_data(self, data: bytes) -> int:
        return self.orchestrator.broadcast_bytes(data)

    def add_data_listener(self, callback: Callable[[str, bytes], None]):
        """Listen for application bytes; sticker traffic is handled internally."""
        self.data_listeners.append(callback)

    async def iter_received(self) -> AsyncIterator[Tuple[str, bytes]]:
        async for peer_id, data in self.orchestrator.iter_received():
            if not is_sticker_message(data):
                yield peer_id, data

    def add_peer_listener(self, event: str, callback: Callable):
        """Observe peer events: state_changed, peer_opened, peer_closed, peer_unreachable, ..."""
        self.orchestrator.add_connection_callback(event, callback)

    @property
    def local_media_surface(self) -> Optional[Any]:
        return self.orchestrator.local_media_surface

    def remote_media_surface(self, peer_id: str) -> Optional[Any]:
        return self.orchestrator.remote_media_surface(peer_id)

    def get_status(self) -> dict:
        return {
            'room_id': self.room_id,
            'local_peer_id': self.local_peer_id,
            'relay_connected': getattr(self.transport, 'is_connected', None),
            'peers': self.orchestrator.get_status(),
            'stickers': self.stickers.get_sync_statistics() if self.stickers else None
        }

    # ------------------------------------------------------------------
    # Internal wiring
    # ------------------------------------------------------------------

    def _on_room_event(self, event: Any):
        if isinstance(event, RoomCreated):
            self._init_stickers(event.identity.host_user_id)
        elif isinstance(event, RoomJoined):
            self._init_stickers(event.local_peer_id)

    def _init_stickers(self, local_peer_id: str):
        self.stickers = StickerSyncService(local_peer_id, self.orchestrator.broadcast_bytes)

    def _on_data(self, peer_id: str, data: bytes):
        if is_sticker_message(data):
            if self.stickers is None:
                self.log_warning(f"Sticker message outside a room", {"peer_id": peer_id})
                return
            self.stickers.handle_remote_message(peer_id, data)
            return

        for callback in list(self.data_listeners):
            try:
                callback(peer_id, data)
            except Exception as e:
                self.log_error(f"Error in data listener", {
                    "peer_id": peer_id,
                    "error": str(e),
                    "error_type": type(e).__name__
                })

    def _on_channel_ready(self, peer_id: str):
        # Bring the new peer up to date with the local view
        if self.stickers is None:
            return
        for snapshot in self.stickers.snapshot_all():
            self.orchestrator.send_bytes(peer_id, snapshot)

    def _on_peer_closed(self, peer_id: str):
        if self.stickers is not None:
            self.stickers.release_peer(peer_id)
