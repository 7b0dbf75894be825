"""
Peer connection orchestration.

Drives one negotiation state machine per remote peer:

    idle -> offer_sent | offer_received -> answer_exchanged -> negotiated -> open -> closed

Room events, relay negotiation messages and media engine events all arrive as
typed events on one SerialDispatcher. The session map is only touched by that
worker, so the "first offer wins" / "first answer wins" guards never race.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from photogether.core.config import PhotoGetherConfig
from photogether.core.exceptions import (
    EncodingError,
    MediaTransportError,
    NegotiationTimeoutError,
    TransportError,
)
from photogether.core.logging import LoggerMixin, debug_log
from photogether.messaging.dispatcher import SerialDispatcher
from photogether.signaling.events import (
    NewPeerObserved,
    RelayConnectionLost,
    RemoteCandidateReceived,
    RemoteDescriptionReceived,
    RoomCreated,
    RoomJoined,
)
from photogether.signaling.messages import IceCandidate, SdpKind, SessionDescription
from photogether.webrtc.data_channel import DataChannelManager
from photogether.webrtc.media_engine import (
    ConnectionStateChanged,
    DataChannelOpened,
    DataReceived,
    LocalCandidateGenerated,
    MediaTransportEngine,
    RemoteTrackReceived,
)
from photogether.webrtc.peer_session import NegotiationRole, NegotiationState, PeerSession

EngineFactory = Callable[[str, Callable[[Any], Any]], MediaTransportEngine]

_CLOSING_STATES = ("failed", "closed", "disconnected")


@dataclass(frozen=True)
class ConnectRequested:
    peer_id: str


@dataclass(frozen=True)
class CloseRequested:
    peer_id: str
    reason: str = "leave"


@dataclass(frozen=True)
class LeaveRequested:
    pass


@dataclass(frozen=True)
class NegotiationTimedOut:
    session: PeerSession


@dataclass(frozen=True)
class EngineEvent:
    """An engine event tagged with the session whose engine produced it."""
    session: PeerSession
    event: Any


@dataclass(frozen=True)
class _Barrier:
    pass


class PeerConnectionOrchestrator(LoggerMixin):
    """Owns the PeerSession map and drives every negotiation to completion."""

    def __init__(self, room_client, engine_factory: EngineFactory,
                 config: Optional[PhotoGetherConfig] = None,
                 local_media_handle: Optional[Any] = None):
        super().__init__()
        self.room_client = room_client
        self.engine_factory = engine_factory
        self.config = config
        self.local_media_handle = local_media_handle

        self.sessions: Dict[str, PeerSession] = {}
        self.data_channel_manager = DataChannelManager()
        self.dispatcher = SerialDispatcher("negotiation")
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Connection event callbacks
        self.connection_callbacks: Dict[str, List[Callable]] = {
            'state_changed': [],
            'peer_opened': [],
            'peer_closed': [],
            'peer_unreachable': [],
            'channel_ready': [],
            'remote_media': []
        }

        self._engine_handlers = {
            LocalCandidateGenerated: self._on_local_candidate,
            ConnectionStateChanged: self._on_connection_state_changed,
            DataChannelOpened: self._on_data_channel_opened,
            DataReceived: self._on_data_received,
            RemoteTrackReceived: self._on_remote_track,
        }

        for event_type, handler in (
            (RoomCreated, self._on_room_created),
            (RoomJoined, self._on_room_joined),
            (NewPeerObserved, self._on_new_peer_observed),
            (RemoteDescriptionReceived, self._on_remote_description),
            (RemoteCandidateReceived, self._on_remote_candidate),
            (RelayConnectionLost, self._on_relay_connection_lost),
            (ConnectRequested, self._on_connect_requested),
            (CloseRequested, self._on_close_requested),
            (LeaveRequested, self._on_leave_requested),
            (NegotiationTimedOut, self._on_negotiation_timed_out),
            (EngineEvent, self._on_engine_event),
            (_Barrier, self._on_barrier),
        ):
            self.dispatcher.register_handler(event_type, handler)

        self.room_client.add_event_sink(self._submit)

        debug_log(f"🔗 [PeerManager] Orchestrator initialized")

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    async def start(self):
        """Start the serializing worker."""
        self._loop = asyncio.get_running_loop()
        await self.dispatcher.start()

    async def stop(self):
        """Close every session and stop the worker."""
        if self.dispatcher.running:
            await self.dispatcher.submit(LeaveRequested())
        await self.dispatcher.stop()
        self.room_client.remove_event_sink(self._submit)

    async def connect(self, peer_id: str):
        """Become initiator toward a peer."""
        await self.dispatcher.submit(ConnectRequested(peer_id=peer_id))

    async def close_peer(self, peer_id: str, reason: str = "leave"):
        await self.dispatcher.submit(CloseRequested(peer_id=peer_id, reason=reason))

    async def leave(self):
        """Cancel every negotiation, close every transport and forget the room."""
        await self.dispatcher.submit(LeaveRequested())

    async def flush(self):
        """Wait until every event submitted so far has been handled."""
        await self.dispatcher.submit(_Barrier())

    def add_connection_callback(self, event: str, callback: Callable):
        """Add a callback for peer events."""
        if event in self.connection_callbacks:
            self.connection_callbacks[event].append(callback)

    def remove_connection_callback(self, event: str, callback: Callable):
        if event in self.connection_callbacks and callback in self.connection_callbacks[event]:
            self.connection_callbacks[event].remove(callback)

    def add_data_listener(self, callback: Callable[[str, bytes], None]):
        self.data_channel_manager.add_data_listener(callback)

    def iter_received(self) -> AsyncIterator[Tuple[str, bytes]]:
        """Stream of (peer_id, bytes) received over data channels."""
        return self.data_channel_manager.iter_received()

    def send_bytes(self, peer_id: str, data: bytes) -> bool:
        return self.data_channel_manager.send_message(peer_id, data)

    def broadcast_bytes(self, data: bytes, exclude_peer_id: Optional[str] = None) -> int:
        return self.data_channel_manager.broadcast_message(data, exclude_peer_id)

    def get_session(self, peer_id: str) -> Optional[PeerSession]:
        return self.sessions.get(peer_id)

    def get_state(self, peer_id: str) -> Optional[NegotiationState]:
        session = self.sessions.get(peer_id)
        return session.state if session else None

    def get_peers(self) -> List[str]:
        return list(self.sessions.keys())

    def get_open_peers(self) -> List[str]:
        return [peer_id for peer_id, s in self.sessions.items() if s.state == NegotiationState.OPEN]

    @property
    def local_media_surface(self) -> Optional[Any]:
        return self.local_media_handle

    def remote_media_surface(self, peer_id: str) -> Optional[Any]:
        session = self.sessions.get(peer_id)
        return session.engine.remote_media_handle if session else None

    def get_status(self) -> Dict[str, Any]:
        return {
            'sessions': {peer_id: s.to_dict() for peer_id, s in self.sessions.items()},
            'open_channels': self.data_channel_manager.get_channel_count(),
            'dispatcher': self.dispatcher.get_statistics()
        }

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def _submit(self, event: Any):
        """Queue an event on the worker; safe to call from any thread."""
        if self._loop is None:
            self.log_warning(f"Dropping event submitted before start", {"event": type(event).__name__})
            return
        if not self.dispatcher.running:
            self.log_debug(f"Dropping event after stop", {"event": type(event).__name__})
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self.dispatcher.submit(event)
        else:
            self._loop.call_soon_threadsafe(self.dispatcher.submit, event)

    def _create_session(self, peer_id: str, role: NegotiationRole) -> PeerSession:
        session = PeerSession(peer_id=peer_id, role=role, engine=None)
        session.engine = self.engine_factory(peer_id, lambda event: self._submit(EngineEvent(session, event)))
        self.sessions[peer_id] = session

        debug_log(f"🆕 [PeerManager] Peer session created", {
            "peer_id": peer_id,
            "role": role.value,
            "total_sessions": len(self.sessions)
        })
        return session

    # ------------------------------------------------------------------
    # Room events
    # ------------------------------------------------------------------

    def _on_room_created(self, event: RoomCreated):
        debug_log(f"🏠 [PeerManager] Hosting room", {"room_id": event.identity.room_id})

    async def _on_room_joined(self, event: RoomJoined):
        debug_log(f"🏠 [PeerManager] Joined room, connecting to roster", {
            "room_id": event.room_id,
            "peers": event.peers
        })
        for peer_id in event.peers:
            await self._start_negotiation(peer_id)

    def _on_new_peer_observed(self, event: NewPeerObserved):
        # The joiner initiates; register the newcomer as a responder
        if event.peer_id in self.sessions:
            self.log_debug(f"Session already exists for new peer", {"peer_id": event.peer_id})
            return
        self._create_session(event.peer_id, NegotiationRole.RESPONDER)

    async def _on_connect_requested(self, event: ConnectRequested):
        await self._start_negotiation(event.peer_id)

    async def _start_negotiation(self, peer_id: str):
        session = self.sessions.get(peer_id)
        if session is None:
            session = self._create_session(peer_id, NegotiationRole.INITIATOR)
        elif (session.state != NegotiationState.IDLE
              or session.has_local_description or session.has_remote_description):
            self.log_debug(f"Negotiation already under way", {"peer_id": peer_id, "state": session.state.value})
            return

        session.role = NegotiationRole.INITIATOR
        try:
            offer = await session.engine.produce_offer()
            local = await session.engine.apply_local_description(offer)
            session.has_local_description = True
            self._transition(session, NegotiationState.OFFER_SENT)
            self._arm_timeout(session)
            await self.room_client.send_session_description(local, receiver_peer_id=peer_id)
        except (MediaTransportError, TransportError, EncodingError) as e:
            self._stall(session, e)

    # ------------------------------------------------------------------
    # Negotiation messages
    # ------------------------------------------------------------------

    async def _on_remote_description(self, event: RemoteDescriptionReceived):
        message = event.message
        if message.kind == SdpKind.OFFER:
            await self._handle_remote_offer(message)
        else:
            await self._handle_remote_answer(message)

    async def _handle_remote_offer(self, message: SessionDescription):
        peer_id = message.sender_peer_id
        session = self.sessions.get(peer_id)
        if session is None:
            session = self._create_session(peer_id, NegotiationRole.RESPONDER)

        if (session.state != NegotiationState.IDLE
                or session.has_local_description or session.has_remote_description):
            self.log_debug(f"Duplicate offer ignored", {"peer_id": peer_id, "state": session.state.value})
            return

        session.role = NegotiationRole.RESPONDER
        self._transition(session, NegotiationState.OFFER_RECEIVED)
        self._arm_timeout(session)
        try:
            await session.engine.apply_remote_description(message)
            session.has_remote_description = True
            await self._flush_candidates(session)

            answer = await session.engine.produce_answer()
            local = await session.engine.apply_local_description(answer)
            session.has_local_description = True
            self._transition(session, NegotiationState.ANSWER_EXCHANGED)
            await self.room_client.send_session_description(local, receiver_peer_id=peer_id)
        except (MediaTransportError, TransportError, EncodingError) as e:
            self._stall(session, e)

    async def _handle_remote_answer(self, message: SessionDescription):
        peer_id = message.sender_peer_id
        session = self.sessions.get(peer_id)
        if (session is None or session.state != NegotiationState.OFFER_SENT
                or session.has_remote_description):
            self.log_debug(f"Unexpected or duplicate answer ignored", {
                "peer_id": peer_id,
                "state": session.state.value if session else None
            })
            return

        try:
            await session.engine.apply_remote_description(message)
        except MediaTransportError as e:
            self._stall(session, e)
            return
        session.has_remote_description = True
        self._transition(session, NegotiationState.ANSWER_EXCHANGED)
        await self._flush_candidates(session)

    async def _on_remote_candidate(self, event: RemoteCandidateReceived):
        candidate = event.message
        peer_id = candidate.sender_peer_id
        session = self.sessions.get(peer_id)
        if session is None:
            # Candidate raced ahead of the offer it belongs to; expires if no offer follows
            session = self._create_session(peer_id, NegotiationRole.RESPONDER)
            self._arm_timeout(session)

        if not session.has_remote_description:
            session.pending_candidates.append(candidate)
            self.log_debug(f"Remote candidate buffered", {
                "peer_id": peer_id,
                "pending": len(session.pending_candidates)
            })
            return

        await self._apply_candidate(session, candidate)

    async def _flush_candidates(self, session: PeerSession):
        if session.pending_candidates:
            debug_log(f"🧊 [PeerManager] Flushing buffered candidates", {
                "peer_id": session.peer_id,
                "count": len(session.pending_candidates)
            })
        while session.pending_candidates:
            await self._apply_candidate(session, session.pending_candidates.popleft())

    async def _apply_candidate(self, session: PeerSession, candidate: IceCandidate):
        try:
            await session.engine.add_remote_candidate(candidate)
            session.applied_candidates += 1
        except MediaTransportError as e:
            session.last_error = e
            self.log_error(f"Failed to apply remote candidate", {
                "peer_id": session.peer_id,
                "error": str(e)
            })

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    async def _on_engine_event(self, wrapped: EngineEvent):
        session = wrapped.session
        if self.sessions.get(session.peer_id) is not session:
            # Late event from a transport that has already been torn down
            return
        handler = self._engine_handlers.get(type(wrapped.event))
        if handler is not None:
            await handler(session, wrapped.event)

    async def _on_local_candidate(self, session: PeerSession, event: LocalCandidateGenerated):
        try:
            await self.room_client.send_ice_candidate(event.candidate, receiver_peer_id=session.peer_id)
        except (TransportError, EncodingError) as e:
            self.log_error(f"Failed to relay local candidate", {
                "peer_id": session.peer_id,
                "error": str(e)
            })

    async def _on_connection_state_changed(self, session: PeerSession, event: ConnectionStateChanged):
        state = event.state
        if state == "connecting" and session.state == NegotiationState.ANSWER_EXCHANGED:
            self._transition(session, NegotiationState.NEGOTIATED)
        elif state == "connected" and session.state in (NegotiationState.ANSWER_EXCHANGED,
                                                          NegotiationState.NEGOTIATED):
            session.cancel_timeout()
            self._transition(session, NegotiationState.OPEN)
            self._notify_callbacks('peer_opened', session.peer_id)
        elif state in _CLOSING_STATES:
            unreachable = state == "failed" or session.state != NegotiationState.OPEN
            await self._close_session(session, reason=f"transport {state}", unreachable=unreachable)

    async def _on_data_channel_opened(self, session: PeerSession, event: DataChannelOpened):
        self.data_channel_manager.add_channel(session.peer_id, session.engine)
        self._notify_callbacks('channel_ready', session.peer_id)

    async def _on_data_received(self, session: PeerSession, event: DataReceived):
        self.data_channel_manager.deliver(session.peer_id, event.data)

    async def _on_remote_track(self, session: PeerSession, event: RemoteTrackReceived):
        self._notify_callbacks('remote_media', session.peer_id, event.track)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _on_close_requested(self, event: CloseRequested):
        session = self.sessions.get(event.peer_id)
        if session is not None:
            await self._close_session(session, reason=event.reason, unreachable=False)

    async def _on_leave_requested(self, event: LeaveRequested):
        debug_log(f"🚪 [PeerManager] Leaving room, closing sessions", {"sessions": list(self.sessions.keys())})
        for session in list(self.sessions.values()):
            await self._close_session(session, reason="leave", unreachable=False)
        self.room_client.leave()

    async def _on_relay_connection_lost(self, event: RelayConnectionLost):
        # Sessions still negotiating can no longer exchange candidates
        for session in list(self.sessions.values()):
            if session.state != NegotiationState.OPEN:
                await self._close_session(session, reason="relay connection lost", unreachable=True)

    async def _on_negotiation_timed_out(self, event: NegotiationTimedOut):
        session = event.session
        if self.sessions.get(session.peer_id) is not session or session.state == NegotiationState.OPEN:
            return
        session.timeout_handle = None
        session.last_error = NegotiationTimeoutError("Peer did not open in time", {
            "peer_id": session.peer_id,
            "state": session.state.value,
            "timeout": self.config.negotiation_timeout if self.config else None
        })
        await self._close_session(session, reason="negotiation timeout", unreachable=True)

    def _on_barrier(self, event: _Barrier):
        return None

    async def _close_session(self, session: PeerSession, reason: str, unreachable: bool):
        if self.sessions.get(session.peer_id) is session:
            del self.sessions[session.peer_id]
        session.cancel_timeout()
        session.pending_candidates.clear()
        self.data_channel_manager.remove_channel(session.peer_id)
        self._transition(session, NegotiationState.CLOSED)

        try:
            await session.engine.close()
        except Exception as e:
            self.log_error(f"Error closing media transport", {
                "peer_id": session.peer_id,
                "error": str(e),
                "error_type": type(e).__name__
            })

        debug_log(f"🔌 [PeerManager] Peer session closed", {
            "peer_id": session.peer_id,
            "reason": reason,
            "remaining_sessions": len(self.sessions)
        })
        self._notify_callbacks('peer_closed', session.peer_id)
        if unreachable:
            self._notify_callbacks('peer_unreachable', session.peer_id, reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, session: PeerSession, new_state: NegotiationState):
        old_state = session.state
        if old_state == new_state:
            return
        if old_state == NegotiationState.CLOSED:
            self.log_warning(f"Ignoring transition out of closed", {
                "peer_id": session.peer_id,
                "target": new_state.value
            })
            return
        session.state = new_state

        debug_log(f"🔁 [PeerManager] {session.peer_id}: {old_state.value} -> {new_state.value}")
        self._notify_callbacks('state_changed', session.peer_id, old_state, new_state)

    def _arm_timeout(self, session: PeerSession):
        timeout = self.config.negotiation_timeout if self.config else None
        if not timeout or session.timeout_handle is not None:
            return
        loop = self._loop or asyncio.get_running_loop()
        session.timeout_handle = loop.call_later(timeout, self._submit, NegotiationTimedOut(session))

    def _stall(self, session: PeerSession, error: Exception):
        """Record a failed step; the session keeps its state and is not retried."""
        session.last_error = error
        self.log_error(f"Negotiation step failed", {
            "peer_id": session.peer_id,
            "state": session.state.value,
            "error": str(error),
            "error_type": type(error).__name__
        })
        self._notify_callbacks('peer_unreachable', session.peer_id, str(error))

    def _notify_callbacks(self, event: str, *args):
        """Notify all callbacks for an event."""
        for callback in list(self.connection_callbacks.get(event, ())):
            try:
                callback(*args)
            except Exception as e:
                self.log_error(f"Error in connection callback", {
                    "event": event,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
