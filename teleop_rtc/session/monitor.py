"""Connection monitoring for the robot peer connection."""

import logging
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeerConnectionState(str, Enum):
    """Aggregate state reported by ``RTCPeerConnection.connectionState``."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class ConnectionMonitor:
    """Watch peer connection state changes and report failure once.

    Args:
        on_failure: Called once, on the first observation of the failed state.
        on_state: Called with every observed state.
    """

    def __init__(
        self,
        on_failure: Callable[[], None],
        on_state: Optional[Callable[[PeerConnectionState], None]] = None,
    ):
        self._on_failure = on_failure
        self._on_state = on_state
        self.has_failed = False
        self.state: Optional[PeerConnectionState] = None

    def attach(self, pc) -> None:
        """Subscribe to ``connectionstatechange`` on a peer connection."""

        def on_state_change() -> None:
            self.observe(getattr(pc, "connectionState", None))

        pc.on("connectionstatechange", on_state_change)

    def observe(self, raw_state: Optional[str]) -> None:
        """Record a state reported by the peer connection."""
        try:
            state = PeerConnectionState(raw_state)
        except ValueError:
            logger.warning(f"Ignoring unknown peer connection state: {raw_state!r}")
            return

        logger.info(f"Peer connection state is now {state.value}")
        self.state = state
        if self._on_state is not None:
            self._on_state(state)

        if state is PeerConnectionState.FAILED and not self.has_failed:
            self.has_failed = True
            self._on_failure()
