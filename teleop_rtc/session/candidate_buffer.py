"""Outbound buffering for signaling frames produced before the relay opens.

Local candidates start trickling out of the peer connection as soon as
gathering begins, which can be before the relay channel is open. Frames
submitted while the transport is still connecting each wait on the
transport's ready future and are sent once it resolves. If the transport never
opens they are dropped; the session is already over at that point.
"""

import asyncio
import logging

from teleop_rtc.exceptions import TransportClosedError, TransportOpenFailure
from teleop_rtc.protocol import SignalingMessage, encode_message
from teleop_rtc.session.transport import SignalingTransport, TransportState

logger = logging.getLogger(__name__)


class CandidateBuffer:
    """Sends signaling messages once the relay channel is open.

    Each submitted message is sent at most once, and exactly once if the
    transport opens and stays open. Buffered messages are not ordered relative
    to each other.
    """

    def __init__(self, transport: SignalingTransport):
        self.transport = transport
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of messages still waiting for the channel to open."""
        return len(self._pending)

    async def submit(self, message: SignalingMessage) -> None:
        """Send a message now if the channel is open, otherwise queue it.

        Args:
            message: Message to deliver to the robot.

        Raises:
            TransportClosedError: If the channel is open but the send fails.
        """
        state = self.transport.state
        if state is TransportState.OPEN:
            await self.transport.send(encode_message(message))
            return

        if state.is_terminal:
            logger.debug(f"Relay channel {state.value}, dropping outbound message")
            return

        task = asyncio.create_task(self._send_when_ready(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def discard_pending(self) -> None:
        """Abandon every message still waiting for the channel."""
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    async def _send_when_ready(self, message: SignalingMessage) -> None:
        try:
            await self.transport.ready
        except TransportOpenFailure:
            logger.debug("Relay channel never opened, dropping buffered message")
            return

        if self.transport.state is not TransportState.OPEN:
            logger.debug("Relay channel closed before flush, dropping buffered message")
            return

        try:
            await self.transport.send(encode_message(message))
        except TransportClosedError as e:
            logger.debug(f"Dropping buffered message: {e}")
