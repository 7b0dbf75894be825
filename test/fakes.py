"""
In-memory stand-ins for the relay connection and the media transport engine.
"""
import asyncio
from typing import Callable, Dict, List, Optional, Tuple

from photogether.core.config import PhotoGetherConfig
from photogether.core.exceptions import MediaTransportError, TransportError
from photogether.signaling.messages import IceCandidate, SdpKind, SessionDescription
from photogether.webrtc.media_engine import (
    ConnectionStateChanged,
    DataChannelOpened,
    DataReceived,
    MediaTransportEngine,
)


def make_config(**overrides) -> PhotoGetherConfig:
    settings = dict(from_env=False, request_timeout=1.0, negotiation_timeout=None, auto_reconnect=False)
    settings.update(overrides)
    return PhotoGetherConfig(**settings)


async def settle(*orchestrators, rounds: int = 20):
    """Let receive loops and dispatcher workers drain."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        for orchestrator in orchestrators:
            await orchestrator.flush()


class FakeRelaySocket:
    """Server-side socket handed to RelayServer; frames land in the client's inbound queue."""

    def __init__(self, transport: "FakeRelayTransport"):
        self.transport = transport
        self.closed = False

    async def send_bytes(self, data: bytes):
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.transport.inject(data)

    async def send_str(self, data: str):
        await self.send_bytes(data.encode('utf-8'))

    async def close(self):
        self.closed = True


class FakeRelayTransport:
    """Relay transport that records sends and optionally routes them through a RelayServer."""

    def __init__(self, relay=None):
        self.relay = relay
        self.relay_connection = None
        self.sent: List[bytes] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.connected = False
        self.fail_sends = False
        self.connection_callbacks: Dict[str, set] = {
            'connected': set(),
            'disconnected': set()
        }

    @property
    def is_connected(self) -> bool:
        return self.connected

    def add_connection_callback(self, event: str, callback: Callable):
        self.connection_callbacks[event].add(callback)

    def remove_connection_callback(self, event: str, callback: Callable):
        self.connection_callbacks[event].discard(callback)

    async def connect(self):
        self.connected = True
        if self.relay is not None:
            self.relay_connection = self.relay.add_connection(FakeRelaySocket(self))

    async def send(self, data: bytes):
        if self.fail_sends or not self.connected:
            raise TransportError("Relay is not connected")
        self.sent.append(data)
        if self.relay is not None:
            await self.relay.handle_message(self.relay_connection, data)

    def inject(self, data: bytes):
        self.inbound.put_nowait(data)

    async def receive(self):
        while True:
            item = await self.inbound.get()
            if item is None:
                return
            yield item

    def drop(self, reason: str = "connection reset"):
        self.connected = False
        for callback in list(self.connection_callbacks['disconnected']):
            callback(reason)

    async def close(self):
        self.connected = False
        self.inbound.put_nowait(None)
        if self.relay is not None and self.relay_connection is not None:
            self.relay.remove_connection(self.relay_connection)
            self.relay_connection = None


class FakeMediaEngine(MediaTransportEngine):
    """Records every call; connects to its counterpart when a FakeNetwork links them."""

    def __init__(self, peer_id: str, sink, local_peer_id: Optional[str] = None,
                 network: Optional["FakeNetwork"] = None):
        super().__init__(peer_id, sink)
        self.local_peer_id = local_peer_id
        self.network = network
        self.offers = 0
        self.answers = 0
        self.local_descriptions: List[SessionDescription] = []
        self.remote_descriptions: List[SessionDescription] = []
        self.candidates: List[IceCandidate] = []
        self.sent: List[bytes] = []
        self.channel_open = False
        self.closed = False
        self.fail_remote = False

    async def produce_offer(self) -> SessionDescription:
        self.offers += 1
        return SessionDescription(kind=SdpKind.OFFER, sdp=f"v=0 offer {self.local_peer_id}->{self.peer_id}")

    async def produce_answer(self) -> SessionDescription:
        self.answers += 1
        return SessionDescription(kind=SdpKind.ANSWER, sdp=f"v=0 answer {self.local_peer_id}->{self.peer_id}")

    async def apply_local_description(self, description: SessionDescription) -> SessionDescription:
        self.local_descriptions.append(description)
        self._maybe_connect()
        return SessionDescription(kind=description.kind, sdp=description.sdp)

    async def apply_remote_description(self, description: SessionDescription):
        if self.fail_remote:
            raise MediaTransportError("remote description rejected", {"peer_id": self.peer_id})
        self.remote_descriptions.append(description)
        self._maybe_connect()

    async def add_remote_candidate(self, candidate: IceCandidate):
        if not self.remote_descriptions:
            raise MediaTransportError("candidate before remote description", {"peer_id": self.peer_id})
        self.candidates.append(candidate)

    def send_bytes(self, data: bytes):
        if not self.channel_open:
            raise MediaTransportError("Data channel is not open", {"peer_id": self.peer_id})
        self.sent.append(data)
        if self.network is not None:
            self.network.deliver(self, data)

    async def close(self):
        self.closed = True
        self.channel_open = False

    def emit(self, event):
        self.sink(event)

    def open(self):
        self.channel_open = True
        self.emit(ConnectionStateChanged(peer_id=self.peer_id, state="connecting"))
        self.emit(ConnectionStateChanged(peer_id=self.peer_id, state="connected"))
        self.emit(DataChannelOpened(peer_id=self.peer_id))

    @property
    def ready(self) -> bool:
        return bool(self.local_descriptions and self.remote_descriptions) and not self.closed

    def _maybe_connect(self):
        if self.network is not None:
            self.network.maybe_connect(self)


class FakeNetwork:
    """Pairs engines by (local, remote) peer IDs and opens both ends once negotiated."""

    def __init__(self):
        self.engines: Dict[Tuple[str, str], FakeMediaEngine] = {}

    def factory(self, local_peer_id: Callable[[], str]):
        def create(peer_id: str, sink) -> FakeMediaEngine:
            engine = FakeMediaEngine(peer_id, sink, local_peer_id(), self)
            self.engines[(engine.local_peer_id, peer_id)] = engine
            return engine
        return create

    def counterpart(self, engine: FakeMediaEngine) -> Optional[FakeMediaEngine]:
        return self.engines.get((engine.peer_id, engine.local_peer_id))

    def maybe_connect(self, engine: FakeMediaEngine):
        other = self.counterpart(engine)
        if other is None or engine.channel_open or not (engine.ready and other.ready):
            return
        engine.open()
        other.open()

    def deliver(self, engine: FakeMediaEngine, data: bytes):
        other = self.counterpart(engine)
        if other is not None and other.channel_open:
            other.emit(DataReceived(peer_id=other.peer_id, data=data))


class EngineRecorder:
    """Engine factory that keeps every FakeMediaEngine it builds, without a network."""

    def __init__(self, local_peer_id: str = "local"):
        self.local_peer_id = local_peer_id
        self.created: List[FakeMediaEngine] = []

    def __call__(self, peer_id: str, sink) -> FakeMediaEngine:
        engine = FakeMediaEngine(peer_id, sink, self.local_peer_id)
        self.created.append(engine)
        return engine

    def for_peer(self, peer_id: str) -> FakeMediaEngine:
        return [engine for engine in self.created if engine.peer_id == peer_id][-1]
