"""Session state machine and the start control that creates it.

A session binds one relay transport to one peer connection. Everything that
happens to it (relay open, inbound frames, relay end, remote track, peer
state changes, negotiation errors, local close) is posted as an event to a
single queue and applied in order by ``Session.run``, so transitions never
interleave.

    IDLE -> CONNECTING -> NEGOTIATING -> CONNECTED -> FAILED | CLOSED

FAILED and CLOSED are terminal. A new session needs a new start.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

from teleop_rtc.exceptions import (
    ConnectionFailure,
    SessionError,
    TransportOpenFailure,
)
from teleop_rtc.session.candidate_buffer import CandidateBuffer
from teleop_rtc.session.monitor import ConnectionMonitor, PeerConnectionState
from teleop_rtc.session.negotiation import NegotiationEngine, create_peer_connection
from teleop_rtc.session.transport import SignalingTransport

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.FAILED, SessionState.CLOSED)


_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED},
    SessionState.CONNECTING: {
        SessionState.NEGOTIATING,
        SessionState.FAILED,
        SessionState.CLOSED,
    },
    SessionState.NEGOTIATING: {
        SessionState.CONNECTED,
        SessionState.FAILED,
        SessionState.CLOSED,
    },
    SessionState.CONNECTED: {SessionState.FAILED, SessionState.CLOSED},
    SessionState.FAILED: set(),
    SessionState.CLOSED: set(),
}

# Session events
EVENT_TRANSPORT_OPEN = "transport_open"
EVENT_INBOUND = "inbound"
EVENT_TRANSPORT_END = "transport_end"
EVENT_TRACK = "track"
EVENT_PEER_STATE = "peer_state"
EVENT_NEGOTIATION_ERROR = "negotiation_error"
EVENT_CLOSE = "close"


class Session:
    """One operator-to-robot video session.

    Args:
        endpoint: Relay WebSocket URL for the device.
        ice_servers: STUN/TURN URLs for the peer connection.
        on_remote_track: Receives the first remote media track.
        on_failure: Notified once if the peer connection fails.
        connector: Coroutine function opening the relay WebSocket.
        peer_connection_factory: Builds the peer connection from ICE URLs.
    """

    def __init__(
        self,
        endpoint: str,
        ice_servers: Optional[List[str]] = None,
        on_remote_track: Optional[Callable[[Any], None]] = None,
        on_failure: Optional[Callable[[], None]] = None,
        connector: Callable = websockets.connect,
        peer_connection_factory: Callable = create_peer_connection,
    ):
        self.endpoint = endpoint
        self.state = SessionState.IDLE
        self.error: Optional[BaseException] = None
        self.track = None
        self._on_remote_track = on_remote_track
        self._on_failure = on_failure
        self._events: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._transport_task: Optional[asyncio.Task] = None

        self.transport = SignalingTransport(endpoint, connector=connector)
        self.buffer = CandidateBuffer(self.transport)
        self.engine = NegotiationEngine(
            self.buffer,
            ice_servers=ice_servers,
            on_error=lambda failure: self._post(EVENT_NEGOTIATION_ERROR, failure),
            peer_connection_factory=peer_connection_factory,
        )
        self.monitor = ConnectionMonitor(
            on_failure=self._notify_failure,
            on_state=lambda state: self._post(EVENT_PEER_STATE, state),
        )

        self.transport.on_open(lambda: self._post(EVENT_TRANSPORT_OPEN))
        self.transport.on_message(self._on_frame)
        self.monitor.attach(self.engine.pc)
        self.engine.pc.on("track", self._on_track)

    def start(self) -> "Session":
        """Run the session in a background task."""
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self

    async def wait(self) -> SessionState:
        """Wait for a started session to finish. Same outcome as ``run``."""
        if self._task is None:
            raise RuntimeError("Session has not been started")
        return await self._task

    def close(self) -> None:
        """Ask the session to close. Takes effect on the event loop."""
        self._post(EVENT_CLOSE)

    async def run(self) -> SessionState:
        """Drive the session until it reaches a terminal state.

        Returns:
            SessionState.CLOSED after a clean close, or SessionState.FAILED
            after a peer connection failure (already reported through
            ``on_failure``).

        Raises:
            TransportOpenFailure: If the relay never opened.
            NegotiationFailure: If an offer, answer or candidate was rejected.
            TransportClosedError: If the relay socket died under a send.
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Session already {self.state.value}")

        self._transition(SessionState.CONNECTING)
        self._transport_task = asyncio.create_task(self.transport.run())
        self._transport_task.add_done_callback(self._on_transport_done)

        try:
            while not self.state.is_terminal:
                kind, payload = await self._events.get()
                await self._dispatch(kind, payload)
        except asyncio.CancelledError:
            self._transition(SessionState.CLOSED)
            raise
        except Exception as e:
            self._fail(e)
            raise
        finally:
            await self._teardown()

        if self.error is not None and not isinstance(self.error, ConnectionFailure):
            raise self.error
        return self.state

    async def _dispatch(self, kind: str, payload: Any) -> None:
        if kind == EVENT_TRANSPORT_OPEN:
            self._transition(SessionState.NEGOTIATING)

        elif kind == EVENT_INBOUND:
            try:
                await self.engine.handle_frame(payload)
            except SessionError as e:
                self._fail(e)

        elif kind == EVENT_NEGOTIATION_ERROR:
            self._fail(payload)

        elif kind == EVENT_TRACK:
            if self.track is not None:
                logger.info(f"Ignoring additional {payload.kind} track")
                return
            self.track = payload
            logger.info(f"Remote {payload.kind} track available")
            if self._on_remote_track is not None:
                self._on_remote_track(payload)
            if self.state is not SessionState.CONNECTED:
                self._transition(SessionState.CONNECTED)

        elif kind == EVENT_PEER_STATE:
            if payload is PeerConnectionState.CONNECTED:
                if self.state is not SessionState.CONNECTED:
                    self._transition(SessionState.CONNECTED)
            elif payload is PeerConnectionState.FAILED:
                self._fail(ConnectionFailure("Peer connection failed"))
            elif payload is PeerConnectionState.CLOSED:
                self._transition(SessionState.CLOSED)

        elif kind == EVENT_TRANSPORT_END:
            if self.state is SessionState.CONNECTING:
                self._fail(payload or TransportOpenFailure("Relay channel closed before opening"))
            elif payload is not None:
                self._fail(payload)
            else:
                logger.info(f"Relay channel {self.transport.state.value}, ending session")
                self._transition(SessionState.CLOSED)

        elif kind == EVENT_CLOSE:
            self._transition(SessionState.CLOSED)

    def _transition(self, state: SessionState) -> bool:
        if state not in _TRANSITIONS[self.state]:
            logger.warning(
                f"Ignoring session transition {self.state.value} -> {state.value}"
            )
            return False
        logger.info(f"Session {self.state.value} -> {state.value}")
        self.state = state
        return True

    def _fail(self, error: BaseException) -> None:
        if self.state.is_terminal:
            return
        logger.error(f"Session failed: {error}")
        self.error = error
        self._transition(SessionState.FAILED)

    async def _teardown(self) -> None:
        self.buffer.discard_pending()
        await self.engine.close()
        await self.transport.close()
        if self._transport_task is not None and not self._transport_task.done():
            self._transport_task.cancel()
            await asyncio.gather(self._transport_task, return_exceptions=True)

    def _post(self, kind: str, payload: Any = None) -> None:
        self._events.put_nowait((kind, payload))

    async def _on_frame(self, frame) -> None:
        self._post(EVENT_INBOUND, frame)

    def _on_track(self, track) -> None:
        self._post(EVENT_TRACK, track)

    def _on_transport_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self._post(EVENT_TRANSPORT_END)
            return
        error = task.exception()
        if error is not None and not isinstance(error, SessionError):
            logger.error(f"Relay channel stopped unexpectedly: {error}")
        self._post(EVENT_TRANSPORT_END, error)

    def _notify_failure(self) -> None:
        logger.error("Peer connection failed")
        if self._on_failure is not None:
            self._on_failure()


class SessionController:
    """Start control for a single session.

    The control disables itself on first use, so at most one session (one
    relay transport and one peer connection) exists per controller.
    """

    def __init__(
        self,
        endpoint: str,
        ice_servers: Optional[List[str]] = None,
        on_remote_track: Optional[Callable[[Any], None]] = None,
        on_failure: Optional[Callable[[], None]] = None,
        connector: Callable = websockets.connect,
        peer_connection_factory: Callable = create_peer_connection,
    ):
        self.endpoint = endpoint
        self.ice_servers = list(ice_servers or [])
        self.session: Optional[Session] = None
        self._on_remote_track = on_remote_track
        self._on_failure = on_failure
        self._connector = connector
        self._peer_connection_factory = peer_connection_factory
        self._start_enabled = True

    @property
    def can_start(self) -> bool:
        return self._start_enabled

    def start(self) -> Optional[Session]:
        """Create and start the session.

        Returns:
            The new Session, or None if the control was already used.
        """
        if not self._start_enabled:
            logger.warning("A session was already started; ignoring start request")
            return None
        self._start_enabled = False

        self.session = Session(
            self.endpoint,
            ice_servers=self.ice_servers,
            on_remote_track=self._on_remote_track,
            on_failure=self._on_failure,
            connector=self._connector,
            peer_connection_factory=self._peer_connection_factory,
        )
        return self.session.start()
