"""
Media transport engine.

The engine owns the real encrypted media/data path for one remote peer. The
orchestrator only drives it through the capability surface below; engine
events are pushed into the sink given at construction.
"""
import abc
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from aiortc import RTCDataChannel, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from photogether.core.config import PhotoGetherConfig
from photogether.core.exceptions import MediaTransportError
from photogether.core.logging import debug_log
from photogether.signaling.messages import IceCandidate, SdpKind, SessionDescription


@dataclass(frozen=True)
class LocalCandidateGenerated:
    peer_id: str
    candidate: IceCandidate


@dataclass(frozen=True)
class ConnectionStateChanged:
    peer_id: str
    state: str


@dataclass(frozen=True)
class DataChannelOpened:
    peer_id: str


@dataclass(frozen=True)
class DataReceived:
    peer_id: str
    data: bytes


@dataclass(frozen=True)
class RemoteTrackReceived:
    peer_id: str
    track: Any


EventSink = Callable[[Any], Any]


class MediaTransportEngine(abc.ABC):
    """Capability surface of a per-peer media transport."""

    def __init__(self, peer_id: str, sink: EventSink):
        self.peer_id = peer_id
        self.sink = sink

    @abc.abstractmethod
    async def produce_offer(self) -> SessionDescription:
        """Create a local offer."""

    @abc.abstractmethod
    async def produce_answer(self) -> SessionDescription:
        """Create a local answer to the applied remote offer."""

    @abc.abstractmethod
    async def apply_local_description(self, description: SessionDescription) -> SessionDescription:
        """Apply a local description and return the description to signal to the peer.

        Engines that gather candidates before returning embed them here.
        """

    @abc.abstractmethod
    async def apply_remote_description(self, description: SessionDescription):
        """Apply the peer's offer or answer."""

    @abc.abstractmethod
    async def add_remote_candidate(self, candidate: IceCandidate):
        """Add one trickled remote candidate."""

    @abc.abstractmethod
    def send_bytes(self, data: bytes):
        """Send bytes over the data channel."""

    @abc.abstractmethod
    async def close(self):
        """Tear down the transport."""

    @property
    def remote_media_handle(self) -> Optional[Any]:
        """Opaque renderable handle for the peer's media, if any."""
        return None


class AiortcMediaEngine(MediaTransportEngine):
    """aiortc-backed engine: one RTCPeerConnection and one data channel per peer.

    aiortc gathers ICE candidates while applying the local description and
    embeds them in it, so this engine never emits LocalCandidateGenerated.
    Remote candidates trickled by browser peers are still accepted.
    """

    def __init__(self, peer_id: str, sink: EventSink, config: PhotoGetherConfig,
                 local_tracks: Optional[List[Any]] = None):
        super().__init__(peer_id, sink)
        self.config = config
        self.pc = RTCPeerConnection(configuration=config.rtc_config)
        self.channel: Optional[RTCDataChannel] = None
        self.remote_tracks: List[Any] = []

        for track in local_tracks or []:
            self.pc.addTrack(track)

        self._setup_peer_connection_handlers()

    @classmethod
    def factory(cls, config: PhotoGetherConfig, local_tracks: Optional[List[Any]] = None):
        """Engine factory for the orchestrator."""
        def create(peer_id: str, sink: EventSink) -> "AiortcMediaEngine":
            return cls(peer_id, sink, config, local_tracks)
        return create

    def _setup_peer_connection_handlers(self):
        pc = self.pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            debug_log(f"🔗 [MediaEngine] Connection state changed", {
                "peer_id": self.peer_id,
                "connection_state": pc.connectionState
            })
            self.sink(ConnectionStateChanged(peer_id=self.peer_id, state=pc.connectionState))

        @pc.on("datachannel")
        def on_datachannel(channel: RTCDataChannel):
            self._attach_channel(channel)

        @pc.on("track")
        def on_track(track):
            debug_log(f"🎥 [MediaEngine] Remote track received", {"peer_id": self.peer_id, "kind": track.kind})
            self.remote_tracks.append(track)
            self.sink(RemoteTrackReceived(peer_id=self.peer_id, track=track))

    def _attach_channel(self, channel: RTCDataChannel):
        self.channel = channel

        @channel.on("open")
        def on_open():
            self.sink(DataChannelOpened(peer_id=self.peer_id))

        @channel.on("message")
        def on_message(message):
            if isinstance(message, str):
                message = message.encode('utf-8')
            self.sink(DataReceived(peer_id=self.peer_id, data=message))

        if channel.readyState == "open":
            self.sink(DataChannelOpened(peer_id=self.peer_id))

    async def produce_offer(self) -> SessionDescription:
        if self.channel is None:
            self._attach_channel(self.pc.createDataChannel(self.config.data_channel_label))
        try:
            offer = await self.pc.createOffer()
        except Exception as e:
            raise MediaTransportError(f"Failed to create offer: {e}", {"peer_id": self.peer_id})
        return SessionDescription(kind=SdpKind.OFFER, sdp=offer.sdp)

    async def produce_answer(self) -> SessionDescription:
        try:
            answer = await self.pc.createAnswer()
        except Exception as e:
            raise MediaTransportError(f"Failed to create answer: {e}", {"peer_id": self.peer_id})
        return SessionDescription(kind=SdpKind.ANSWER, sdp=answer.sdp)

    async def apply_local_description(self, description: SessionDescription) -> SessionDescription:
        try:
            await self.pc.setLocalDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.kind.value)
            )
        except Exception as e:
            raise MediaTransportError(f"Failed to apply local description: {e}", {"peer_id": self.peer_id})
        local = self.pc.localDescription
        return SessionDescription(kind=SdpKind(local.type), sdp=local.sdp)

    async def apply_remote_description(self, description: SessionDescription):
        try:
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.kind.value)
            )
        except Exception as e:
            raise MediaTransportError(f"Failed to apply remote description: {e}", {"peer_id": self.peer_id})

    async def add_remote_candidate(self, candidate: IceCandidate):
        sdp = candidate.sdp
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        if not sdp:
            debug_log(f"🧊 [MediaEngine] Skipping end-of-candidates marker", {"peer_id": self.peer_id}, "DEBUG")
            return
        try:
            rtc_candidate = candidate_from_sdp(sdp)
            rtc_candidate.sdpMid = candidate.sdp_mid
            rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
            await self.pc.addIceCandidate(rtc_candidate)
        except Exception as e:
            raise MediaTransportError(f"Failed to add remote candidate: {e}", {"peer_id": self.peer_id})

    def send_bytes(self, data: bytes):
        channel = self.channel
        if channel is None or channel.readyState != "open":
            raise MediaTransportError("Data channel is not open", {
                "peer_id": self.peer_id,
                "ready_state": channel.readyState if channel else None
            })
        channel.send(data)

    @property
    def remote_media_handle(self) -> Optional[Any]:
        return self.remote_tracks[0] if self.remote_tracks else None

    async def close(self):
        await self.pc.close()
