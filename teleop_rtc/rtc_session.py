"""Entry point for an operator video session with a robot."""

import asyncio
import logging
from typing import List, Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder
from loguru import logger

from teleop_rtc.config import get_config
from teleop_rtc.session import SessionController, SessionState

logging.basicConfig(level=logging.INFO)


class TrackPresenter:
    """Feeds the remote track into an aiortc media sink.

    Records to a file when a path is given, otherwise consumes and discards
    the frames so the track keeps flowing.
    """

    def __init__(self, record: Optional[str] = None):
        self.sink = MediaRecorder(record) if record else MediaBlackhole()
        self.record = record
        self._start_task: Optional[asyncio.Task] = None

    def present(self, track) -> None:
        self.sink.addTrack(track)
        self._start_task = asyncio.ensure_future(self.sink.start())
        if self.record:
            logger.info(f"Recording remote {track.kind} to {self.record}")

    async def close(self) -> None:
        if self._start_task is None:
            return
        try:
            await self._start_task
        finally:
            await self.sink.stop()


def notify_connection_failure() -> None:
    """Tell the operator the robot connection failed."""
    print("\n" + "=" * 60)
    print("CONNECTION TO ROBOT FAILED")
    print("=" * 60)
    print("Start a new session to try again.\n")


async def run_operator_session(
    endpoint: str,
    ice_servers: List[str],
    record: Optional[str] = None,
) -> SessionState:
    """Start one session and wait for it to end.

    Args:
        endpoint: Relay WebSocket URL for the device.
        ice_servers: STUN/TURN URLs.
        record: Optional path to record the remote track to.

    Returns:
        Terminal SessionState.
    """
    presenter = TrackPresenter(record)
    controller = SessionController(
        endpoint,
        ice_servers=ice_servers,
        on_remote_track=presenter.present,
        on_failure=notify_connection_failure,
    )
    session = controller.start()
    try:
        return await session.wait()
    finally:
        await presenter.close()


def run_session(
    host: Optional[str] = None,
    device: Optional[str] = None,
    secure: Optional[bool] = None,
    ice_servers: Optional[List[str]] = None,
    record: Optional[str] = None,
) -> SessionState:
    """Main entry point for an operator session.

    Args:
        host: Relay host (defaults to config).
        device: Device name (defaults to config).
        secure: Use wss instead of ws (defaults to config).
        ice_servers: STUN/TURN URLs (defaults to config).
        record: Optional path to record the remote track to.

    Returns:
        Terminal SessionState.

    Raises:
        ValueError: If no relay host or device is configured.
        TransportOpenFailure: If the relay could not be opened.
        NegotiationFailure: If negotiation with the robot failed.
    """
    config = get_config()
    endpoint = config.get_relay_url(host=host, device=device, secure=secure)
    ice_servers = list(ice_servers) if ice_servers else config.ice_servers

    logger.info(f"Starting session with {endpoint}")
    logger.info(f"ICE servers: {', '.join(ice_servers)}")

    try:
        state = asyncio.run(run_operator_session(endpoint, ice_servers, record))
    except KeyboardInterrupt:
        logger.info("Session interrupted by user. Shutting down...")
        return SessionState.CLOSED

    logger.info(f"Session ended ({state.value})")
    return state
