"""Signaling message protocol for teleop-rtc.

This module defines the frames exchanged with the robot over the relay channel
while a WebRTC session is being negotiated. Media never travels over the relay;
it only bootstraps the direct peer connection.

Relay Endpoint
--------------

The relay is addressed per device:

    {scheme}://{host}/{device}/rtc

where scheme is ``wss`` when the hosting page is served over ``https`` and
``ws`` otherwise.

Frame Encoding
--------------

Every frame is a UTF-8 text frame holding exactly one JSON value.

**Session description**
    Sent by: Robot (offer), Operator (answer)
    Format: {"type": "offer" | "answer", "sdp": "<sdp text>"}
    Example: {"type": "offer", "sdp": "v=0\\r\\no=- 4611 2 IN IP4 127.0.0.1..."}

**Connectivity candidate**
    Sent by: Either peer, as candidates are discovered (trickle)
    Format: {"candidate": "<ice text>", "sdpMid": "<id>", "sdpMLineIndex": <int>}
    Example: {"candidate": "candidate:842163049 1 udp 1677729535 203.0.113.7
              46154 typ srflx raddr 0.0.0.0 rport 0", "sdpMid": "0",
              "sdpMLineIndex": 0}

**End of candidates**
    Sent by: Either peer
    Format: null

Disambiguation
--------------

A frame is a session description if and only if it is a JSON object with an
``sdp`` key. Every other frame, ``null`` included, is a connectivity candidate
and is handed to the peer connection without validation. Whether the relay
ever produces the ``null`` frame has not been verified against the relay
implementation; it is forwarded as end-of-candidates either way.

Message Flow
------------

1. Robot → Operator: {"type": "offer", "sdp": ...}
2. Operator → Robot: {"type": "answer", "sdp": ...}
3. Robot → Operator: candidate frames (any number, any time)
4. Operator → Robot: candidate frames, held back until the relay is open
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from teleop_rtc.exceptions import ProtocolError

# Session description kinds
SDP_OFFER = "offer"
SDP_ANSWER = "answer"

# Frame keys
KEY_TYPE = "type"
KEY_SDP = "sdp"
KEY_CANDIDATE = "candidate"
KEY_SDP_MID = "sdpMid"
KEY_SDP_MLINE_INDEX = "sdpMLineIndex"

# Attribute prefix browsers put in front of candidate lines
CANDIDATE_PREFIX = "candidate:"

# Relay path convention
RELAY_PATH = "rtc"


@dataclass(frozen=True)
class SessionDescription:
    """An SDP offer or answer.

    Attributes:
        kind: Either "offer" or "answer".
        sdp: The session description text.
    """

    kind: str
    sdp: str


@dataclass(frozen=True)
class ConnectivityCandidate:
    """A trickled ICE candidate, kept exactly as it came off the wire.

    The payload is not validated when decoded. Conversion to an aiortc
    candidate happens in :func:`to_ice_candidate`, which is where a malformed
    shape is reported.

    Attributes:
        payload: The decoded JSON value of the frame (``None`` for a null frame).
    """

    payload: Any = None

    @property
    def candidate(self) -> Optional[str]:
        if isinstance(self.payload, dict):
            return self.payload.get(KEY_CANDIDATE)
        return None

    @property
    def sdp_mid(self) -> Optional[str]:
        if isinstance(self.payload, dict):
            return self.payload.get(KEY_SDP_MID)
        return None

    @property
    def sdp_mline_index(self) -> Optional[int]:
        if isinstance(self.payload, dict):
            return self.payload.get(KEY_SDP_MLINE_INDEX)
        return None

    @property
    def is_end_of_candidates(self) -> bool:
        """True for a null frame or a frame with an empty candidate line."""
        if self.payload is None:
            return True
        return isinstance(self.payload, dict) and self.payload.get(KEY_CANDIDATE) == ""


SignalingMessage = Union[SessionDescription, ConnectivityCandidate]


def decode_message(frame: Union[str, bytes]) -> SignalingMessage:
    """Decode one relay frame into a signaling message.

    Args:
        frame: The raw text frame (bytes are decoded as UTF-8).

    Returns:
        A SessionDescription if the frame carries an ``sdp`` key, otherwise a
        ConnectivityCandidate wrapping the decoded payload.

    Raises:
        ProtocolError: If the frame is not valid UTF-8 JSON.

    Examples:
        >>> decode_message('{"type": "offer", "sdp": "v=0"}')
        SessionDescription(kind='offer', sdp='v=0')

        >>> decode_message("null")
        ConnectivityCandidate(payload=None)
    """
    try:
        if isinstance(frame, bytes):
            frame = frame.decode("utf-8")
        data = json.loads(frame)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid signaling frame: {e}") from e

    if isinstance(data, dict) and KEY_SDP in data:
        return SessionDescription(kind=data.get(KEY_TYPE), sdp=data[KEY_SDP])
    return ConnectivityCandidate(payload=data)


def encode_message(message: SignalingMessage) -> str:
    """Encode a signaling message as a JSON text frame.

    Args:
        message: Message to encode.

    Returns:
        The JSON text to send over the relay.

    Examples:
        >>> encode_message(SessionDescription(kind="answer", sdp="v=0"))
        '{"type": "answer", "sdp": "v=0"}'
    """
    if isinstance(message, SessionDescription):
        return json.dumps({KEY_TYPE: message.kind, KEY_SDP: message.sdp})
    return json.dumps(message.payload)


def to_ice_candidate(message: ConnectivityCandidate) -> Optional[RTCIceCandidate]:
    """Convert a received candidate message into an aiortc candidate.

    Args:
        message: Candidate message decoded from the relay.

    Returns:
        The RTCIceCandidate, or None for end-of-candidates.

    Raises:
        ProtocolError: If the payload does not describe a candidate.
    """
    if message.is_end_of_candidates:
        return None

    line = message.candidate
    if not isinstance(message.payload, dict) or not isinstance(line, str):
        raise ProtocolError(f"Malformed candidate frame: {message.payload!r}")

    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX) :]

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ProtocolError(f"Malformed candidate line: {message.candidate!r}") from e

    candidate.sdpMid = message.sdp_mid
    candidate.sdpMLineIndex = message.sdp_mline_index
    return candidate


def from_ice_candidate(candidate: RTCIceCandidate) -> ConnectivityCandidate:
    """Build the outbound message for a locally discovered candidate.

    Args:
        candidate: Candidate emitted by the local peer connection.

    Returns:
        ConnectivityCandidate in the browser wire shape.
    """
    return ConnectivityCandidate(
        payload={
            KEY_CANDIDATE: CANDIDATE_PREFIX + candidate_to_sdp(candidate),
            KEY_SDP_MID: candidate.sdpMid,
            KEY_SDP_MLINE_INDEX: candidate.sdpMLineIndex,
        }
    )


def relay_endpoint(host: str, device: str, page_scheme: str = "http") -> str:
    """Build the relay URL for a device.

    Args:
        host: Relay host, optionally with a port (e.g. "relay.local:8080").
        device: Device name the relay routes to.
        page_scheme: Scheme of the hosting page; "https" selects "wss".

    Returns:
        The relay WebSocket URL.

    Examples:
        >>> relay_endpoint("relay.local:8080", "rover")
        'ws://relay.local:8080/rover/rtc'

        >>> relay_endpoint("relay.example.com", "rover", page_scheme="https")
        'wss://relay.example.com/rover/rtc'
    """
    scheme = "wss" if page_scheme.lower() == "https" else "ws"
    host = host.rstrip("/")
    device = device.strip("/")
    return f"{scheme}://{host}/{device}/{RELAY_PATH}"
