"""Relay channel used to exchange signaling frames with the robot.

The transport wraps one WebSocket connection to the relay. It goes through
CONNECTING -> OPEN -> CLOSED/FAILED exactly once and never reopens.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from teleop_rtc.exceptions import (
    TransportClosedError,
    TransportOpenFailure,
    TransportStateError,
)

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]
MessageHandler = Callable[[Frame], Awaitable[None]]


class TransportState(str, Enum):
    """Lifecycle of the relay channel."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransportState.CLOSED, TransportState.FAILED)


class SignalingTransport:
    """Single WebSocket channel to the relay.

    Inbound frames are handed to the registered handler one at a time, in
    arrival order; the next frame is not read until the handler returns.

    Attributes:
        url: Relay WebSocket URL.
        state: Current TransportState.
        ready: Future resolved when the channel opens, or rejected with
            TransportOpenFailure if it ends before opening.
        task: Task running the transport when started through ``connect``.
    """

    def __init__(self, url: str, connector: Callable = websockets.connect):
        self.url = url
        self.state = TransportState.CONNECTING
        self._connector = connector
        self._websocket = None
        self._open_callbacks: list[Callable[[], None]] = []
        self._message_handler: Optional[MessageHandler] = None
        self.task: Optional[asyncio.Task] = None

        self.ready: asyncio.Future = asyncio.get_running_loop().create_future()
        # A rejected ready future is often never awaited (no candidates were
        # queued); retrieving the exception keeps asyncio from logging it.
        self.ready.add_done_callback(_consume_exception)

    @classmethod
    def connect(cls, url: str, connector: Callable = websockets.connect):
        """Create a transport and start opening it in the background.

        Args:
            url: Relay WebSocket URL.
            connector: Coroutine function returning an open WebSocket.

        Returns:
            The transport. Its ``task`` attribute holds the task running it.
        """
        transport = cls(url, connector=connector)
        transport.task = asyncio.create_task(transport.run())
        return transport

    def on_open(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked synchronously when the channel opens."""
        self._open_callbacks.append(callback)

    def on_message(self, handler: MessageHandler) -> None:
        """Register the coroutine that consumes inbound frames."""
        self._message_handler = handler

    async def run(self) -> None:
        """Open the channel and pump inbound frames until it ends.

        Raises:
            TransportOpenFailure: If the channel could not be opened.
            Exception: Anything raised by the message handler ends the
                channel and propagates.
        """
        logger.info(f"Connecting to relay at {self.url}")
        try:
            self._websocket = await self._connector(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._fail_before_open(e)
            raise TransportOpenFailure(f"Could not open relay {self.url}: {e}") from e
        except asyncio.CancelledError:
            self._fail_before_open(None)
            raise

        if self.state.is_terminal:
            # Closed locally while the handshake was in flight.
            await self._websocket.close()
            return

        self._set_open()

        try:
            async for frame in self._websocket:
                if self._message_handler is not None:
                    await self._message_handler(frame)
            self._set_state(TransportState.CLOSED)
        except ConnectionClosedOK:
            self._set_state(TransportState.CLOSED)
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"Relay connection lost: {e}")
            self._set_state(TransportState.FAILED)
        finally:
            if not self.state.is_terminal:
                self._set_state(TransportState.CLOSED)
            await self._websocket.close()
            logger.info(f"Relay channel {self.state.value}")

    async def send(self, text: str) -> None:
        """Send one frame to the relay.

        Args:
            text: JSON text frame.

        Raises:
            TransportStateError: If the channel is not open.
            TransportClosedError: If the socket closed while sending.
        """
        if self.state is not TransportState.OPEN:
            raise TransportStateError(
                f"Cannot send on a relay channel that is {self.state.value}"
            )
        try:
            await self._websocket.send(text)
        except ConnectionClosed as e:
            raise TransportClosedError(f"Relay channel closed while sending: {e}") from e

    async def close(self) -> None:
        """Close the channel. The transport ends CLOSED."""
        if self.state is TransportState.CONNECTING:
            self._fail_before_open(None, state=TransportState.CLOSED)
            return
        if self.state is TransportState.OPEN:
            self._set_state(TransportState.CLOSED)
        if self._websocket is not None:
            await self._websocket.close()

    def _set_open(self) -> None:
        self._set_state(TransportState.OPEN)
        if not self.ready.done():
            self.ready.set_result(None)
        for callback in self._open_callbacks:
            callback()

    def _fail_before_open(
        self, error: Optional[BaseException], state: TransportState = TransportState.FAILED
    ) -> None:
        if error is not None:
            logger.error(f"Relay channel failed before opening: {error}")
        self._set_state(state)
        if not self.ready.done():
            self.ready.set_exception(
                TransportOpenFailure(f"Relay channel {state.value} before opening")
            )

    def _set_state(self, state: TransportState) -> None:
        if self.state.is_terminal or self.state is state:
            return
        logger.debug(f"Relay channel {self.state.value} -> {state.value}")
        self.state = state


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
