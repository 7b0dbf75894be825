"""
Per-peer negotiation state.
"""
import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Optional

from photogether.signaling.messages import IceCandidate
from photogether.webrtc.media_engine import MediaTransportEngine


class NegotiationRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_EXCHANGED = "answer_exchanged"
    NEGOTIATED = "negotiated"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(eq=False)
class PeerSession:
    """Negotiation and connection state for one remote peer.

    Only the orchestrator's dispatcher worker mutates a session.
    """
    peer_id: str
    role: NegotiationRole
    engine: MediaTransportEngine
    state: NegotiationState = NegotiationState.IDLE
    has_local_description: bool = False
    has_remote_description: bool = False
    pending_candidates: Deque[IceCandidate] = field(default_factory=deque)
    applied_candidates: int = 0
    timeout_handle: Optional[asyncio.TimerHandle] = None
    last_error: Optional[Exception] = None

    def cancel_timeout(self):
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None

    def to_dict(self) -> dict:
        return {
            'peer_id': self.peer_id,
            'role': self.role.value,
            'state': self.state.value,
            'has_local_description': self.has_local_description,
            'has_remote_description': self.has_remote_description,
            'pending_candidates': len(self.pending_candidates),
            'applied_candidates': self.applied_candidates,
            'last_error': str(self.last_error) if self.last_error else None
        }
