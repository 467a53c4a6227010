"""Signaling handshake for one operator-to-robot session."""

from teleop_rtc.session.candidate_buffer import CandidateBuffer
from teleop_rtc.session.controller import Session, SessionController, SessionState
from teleop_rtc.session.monitor import ConnectionMonitor, PeerConnectionState
from teleop_rtc.session.negotiation import NegotiationEngine
from teleop_rtc.session.transport import SignalingTransport, TransportState

__all__ = [
    "CandidateBuffer",
    "ConnectionMonitor",
    "NegotiationEngine",
    "PeerConnectionState",
    "Session",
    "SessionController",
    "SessionState",
    "SignalingTransport",
    "TransportState",
]
