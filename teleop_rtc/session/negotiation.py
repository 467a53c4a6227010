"""SDP and ICE negotiation with the robot.

The robot initiates: it sends an offer through the relay and this side
answers. Candidates trickle in both directions for the rest of the session.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from teleop_rtc.exceptions import (
    NegotiationFailure,
    ProtocolError,
    SessionError,
    TransportClosedError,
)
from teleop_rtc.protocol import (
    SDP_ANSWER,
    SDP_OFFER,
    ConnectivityCandidate,
    SessionDescription,
    SignalingMessage,
    decode_message,
    from_ice_candidate,
    to_ice_candidate,
)
from teleop_rtc.session.candidate_buffer import CandidateBuffer

logger = logging.getLogger(__name__)


def create_peer_connection(ice_servers: List[str]) -> RTCPeerConnection:
    """Create a peer connection using the given STUN/TURN URLs."""
    configuration = RTCConfiguration(
        iceServers=[RTCIceServer(urls=url) for url in ice_servers]
    )
    return RTCPeerConnection(configuration=configuration)


class NegotiationEngine:
    """Owns the peer connection and applies inbound signaling to it.

    Attributes:
        pc: The peer connection for this session.
        outbound: Buffer that carries answers and local candidates to the relay.
        answers_sent: Number of answers transmitted so far.
    """

    def __init__(
        self,
        outbound: CandidateBuffer,
        ice_servers: Optional[List[str]] = None,
        on_error: Optional[Callable[[SessionError], None]] = None,
        peer_connection_factory: Callable[[List[str]], RTCPeerConnection] = create_peer_connection,
    ):
        self.outbound = outbound
        self.pc = peer_connection_factory(list(ice_servers or []))
        self.answers_sent = 0
        self._on_error = on_error
        self._install_task: Optional[asyncio.Task] = None

        self.pc.on("icecandidate", self._on_local_candidate)

    async def handle_frame(self, frame) -> None:
        """Decode a relay frame and apply it.

        Raises:
            NegotiationFailure: If the frame cannot be decoded or applied.
        """
        try:
            message = decode_message(frame)
        except ProtocolError as e:
            raise NegotiationFailure(str(e)) from e
        await self.handle_inbound(message)

    async def handle_inbound(self, message: SignalingMessage) -> None:
        """Apply one inbound signaling message to the peer connection.

        Args:
            message: Decoded session description or connectivity candidate.

        Raises:
            NegotiationFailure: If the description or candidate is rejected.
        """
        if isinstance(message, SessionDescription):
            if message.kind == SDP_OFFER:
                await self._accept_offer(message)
            elif message.kind == SDP_ANSWER:
                await self._accept_answer(message)
            else:
                raise NegotiationFailure(
                    f"Unsupported session description type: {message.kind!r}"
                )
        else:
            await self._add_remote_candidate(message)

    async def close(self) -> None:
        """Stop any pending local description work and close the peer connection."""
        if self._install_task is not None and not self._install_task.done():
            self._install_task.cancel()
        await self.pc.close()

    async def _accept_offer(self, offer: SessionDescription) -> None:
        logger.info("Received offer SDP")
        try:
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=offer.sdp, type=SDP_OFFER)
            )
            answer = await self.pc.createAnswer()
        except Exception as e:
            raise NegotiationFailure(f"Could not answer offer: {e}") from e

        # The answer goes out as soon as it exists; installing it as the local
        # description runs alongside.
        await self.outbound.submit(SessionDescription(kind=SDP_ANSWER, sdp=answer.sdp))
        self.answers_sent += 1
        logger.info("Answer sent to robot")

        self._install_task = asyncio.create_task(self._install_local_description(answer))

    async def _install_local_description(self, answer: RTCSessionDescription) -> None:
        try:
            await self.pc.setLocalDescription(answer)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failure = NegotiationFailure(f"Could not install local description: {e}")
            failure.__cause__ = e
            logger.error(str(failure))
            if self._on_error is not None:
                self._on_error(failure)
            return
        logger.debug("Local description installed")

    async def _accept_answer(self, answer: SessionDescription) -> None:
        logger.info("Received answer SDP")
        try:
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=answer.sdp, type=SDP_ANSWER)
            )
        except Exception as e:
            raise NegotiationFailure(f"Could not apply answer: {e}") from e

    async def _add_remote_candidate(self, message: ConnectivityCandidate) -> None:
        try:
            candidate = to_ice_candidate(message)
        except ProtocolError as e:
            raise NegotiationFailure(str(e)) from e

        if candidate is None:
            logger.debug("Received end of candidates")
        else:
            logger.debug(f"Received ICE candidate for {candidate.sdpMid}")

        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            raise NegotiationFailure(f"Could not add ICE candidate: {e}") from e

    async def _on_local_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        # Called by the peer connection event emitter, which does not propagate errors.
        if candidate is None:
            logger.debug("Local ICE gathering complete")
            return
        try:
            await self.outbound.submit(from_ice_candidate(candidate))
        except TransportClosedError as e:
            logger.error(f"Could not send local candidate: {e}")
            if self._on_error is not None:
                self._on_error(e)
