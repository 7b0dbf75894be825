"""
Data channel management for open peer sessions.
Sends bytes to peers and fans received bytes out to subscribers.
"""
import asyncio
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from photogether.core.exceptions import MediaTransportError
from photogether.core.logging import LoggerMixin, debug_log
from photogether.webrtc.media_engine import MediaTransportEngine


class DataChannelManager(LoggerMixin):
    """Tracks peers with an open data channel.

    Received bytes are delivered to every listener and subscriber once, in
    arrival order.
    """

    def __init__(self):
        super().__init__()
        self.channels: Dict[str, MediaTransportEngine] = {}
        self.data_listeners: List[Callable[[str, bytes], None]] = []
        self._subscribers: Set[asyncio.Queue] = set()

    def add_channel(self, peer_id: str, engine: MediaTransportEngine):
        """Register a peer whose data channel is open."""
        self.channels[peer_id] = engine

        self.log_info(f"Data channel ready", {
            "peer_id": peer_id,
            "total_channels": len(self.channels)
        })

    def remove_channel(self, peer_id: str):
        """Forget a peer's data channel."""
        if self.channels.pop(peer_id, None) is not None:
            self.log_info(f"Removed data channel", {
                "peer_id": peer_id,
                "total_channels": len(self.channels)
            })

    def add_data_listener(self, callback: Callable[[str, bytes], None]):
        self.data_listeners.append(callback)

    def remove_data_listener(self, callback: Callable[[str, bytes], None]):
        if callback in self.data_listeners:
            self.data_listeners.remove(callback)

    def deliver(self, peer_id: str, data: bytes):
        """Fan received bytes out to listeners and subscribers."""
        for callback in list(self.data_listeners):
            try:
                callback(peer_id, data)
            except Exception as e:
                self.log_error(f"Error in data listener", {
                    "peer_id": peer_id,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
        for queue in list(self._subscribers):
            queue.put_nowait((peer_id, data))

    async def iter_received(self) -> AsyncIterator[Tuple[str, bytes]]:
        """Yield (peer_id, data) for every message received after subscribing."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    def send_message(self, peer_id: str, data: bytes) -> bool:
        """Send bytes to a specific peer."""
        engine = self.channels.get(peer_id)
        if engine is None:
            self.log_warning(f"Cannot send message: peer not connected", {
                "peer_id": peer_id,
                "available_peers": list(self.channels.keys())
            })
            return False

        try:
            engine.send_bytes(data)
            return True
        except MediaTransportError as e:
            self.log_error(f"Failed to send message to peer", {
                "peer_id": peer_id,
                "error": str(e)
            })
            return False

    def broadcast_message(self, data: bytes, exclude_peer_id: Optional[str] = None) -> int:
        """Send bytes to every connected peer except the excluded one."""
        sent_count = 0
        for peer_id in list(self.channels.keys()):
            if peer_id != exclude_peer_id and self.send_message(peer_id, data):
                sent_count += 1

        debug_log(f"📤 [DataChannel] Broadcast completed", {
            "sent_count": sent_count,
            "total_peers": len(self.channels),
            "length": len(data)
        }, "DEBUG")

        return sent_count

    def get_channel_count(self) -> int:
        return len(self.channels)
