"""End-to-end handshake tests for Session and SessionController.

A fake relay and a stub peer connection stand in for the network and media
stacks; everything else is the real session code.
"""

import asyncio
from unittest import mock

import pytest
from aiortc import RTCIceCandidate

from teleop_rtc.exceptions import (
    ConnectionFailure,
    NegotiationFailure,
    TransportClosedError,
    TransportOpenFailure,
)
from teleop_rtc.session.controller import Session, SessionController, SessionState
from teleop_rtc.session.negotiation import create_peer_connection

URL = "ws://relay.local/rover/rtc"
OFFER = {"type": "offer", "sdp": "v=0\r\no=- 4611 2 IN IP4 127.0.0.1\r\n"}
REMOTE_CANDIDATES = [
    {
        "candidate": "candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx raddr 0.0.0.0 rport 0",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    },
    {
        "candidate": "candidate:1 1 udp 2130706431 10.0.0.9 51000 typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    },
]


def _local_candidate(n):
    return RTCIceCandidate(
        component=1,
        foundation=str(n),
        ip=f"192.168.1.{n}",
        port=50000 + n,
        priority=2130706431,
        protocol="udp",
        type="host",
        sdpMid="0",
        sdpMLineIndex=0,
    )


@pytest.fixture
def failures():
    return []


@pytest.fixture
def tracks():
    return []


def _controller(connector, pc_factory, tracks, failures):
    return SessionController(
        URL,
        ice_servers=["stun:stun.example.com:3478"],
        on_remote_track=tracks.append,
        on_failure=lambda: failures.append(True),
        connector=connector,
        peer_connection_factory=pc_factory,
    )


class TestHandshake:
    @pytest.mark.asyncio
    async def test_offer_answer_and_trickle(
        self, held_relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(held_relay, pc_factory, tracks, failures).start()
        pc = pc_factory.pc
        ws = held_relay.websocket
        await eventually(lambda: session.state is SessionState.CONNECTING)

        # Local candidates discovered while the relay is still connecting.
        await pc.emit("icecandidate", _local_candidate(1))
        await pc.emit("icecandidate", _local_candidate(2))
        assert ws.sent == []

        held_relay.release()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)

        ws.feed(OFFER)
        for candidate in REMOTE_CANDIDATES:
            ws.feed(candidate)
        await eventually(lambda: len(pc.candidates) == 2)

        sent = ws.sent_messages()
        answers = [m for m in sent if m.get("type") == "answer"]
        local = [m for m in sent if "candidate" in m]
        assert len(answers) == 1
        assert sorted(m["candidate"] for m in local) == [
            "candidate:1 1 udp 2130706431 192.168.1.1 50001 typ host",
            "candidate:2 1 udp 2130706431 192.168.1.2 50002 typ host",
        ]
        assert [c.ip for c in pc.candidates] == ["203.0.113.7", "10.0.0.9"]

        track = mock.MagicMock(kind="video")
        await pc.emit("track", track)
        await eventually(lambda: session.state is SessionState.CONNECTED)
        assert tracks == [track]

        session.close()
        state = await asyncio.wait_for(session.wait(), timeout=1)

        assert state is SessionState.CLOSED
        assert pc.closed
        assert ws.closed
        assert failures == []

    @pytest.mark.asyncio
    async def test_answer_sent_before_next_message_processed(
        self, relay, pc_factory, tracks, failures, call_log, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()
        pc = pc_factory.pc

        relay.websocket.feed(OFFER)
        relay.websocket.feed(REMOTE_CANDIDATES[0])
        await eventually(lambda: len(pc.candidates) == 1)

        kinds = [entry[0] for entry in call_log]
        assert kinds.index("send") < kinds.index("candidate")
        assert kinds.count("send") == 1

        session.close()
        await asyncio.wait_for(session.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_one_answer_per_offer(
        self, relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()

        relay.websocket.feed(OFFER)
        relay.websocket.feed(OFFER)
        await eventually(lambda: session.engine.answers_sent == 2)

        answers = [m for m in relay.websocket.sent_messages() if m.get("type") == "answer"]
        assert len(answers) == 2

        session.close()
        await asyncio.wait_for(session.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_peer_connected_moves_session_to_connected(
        self, relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)

        await pc_factory.pc.set_state("connected")
        await eventually(lambda: session.state is SessionState.CONNECTED)

        session.close()
        await asyncio.wait_for(session.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_only_first_track_exposed(
        self, relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)

        video = mock.MagicMock(kind="video")
        audio = mock.MagicMock(kind="audio")
        await pc_factory.pc.emit("track", video)
        await pc_factory.pc.emit("track", audio)
        await eventually(lambda: session.state is SessionState.CONNECTED)
        await asyncio.sleep(0.01)

        assert tracks == [video]
        assert session.track is video

        session.close()
        await asyncio.wait_for(session.wait(), timeout=1)


class TestStartControl:
    @pytest.mark.asyncio
    async def test_second_start_has_no_effect(
        self, relay, pc_factory, tracks, failures, settle
    ):
        controller = _controller(relay, pc_factory, tracks, failures)

        session = controller.start()
        assert not controller.can_start
        assert controller.start() is None
        await settle()

        assert controller.session is session
        assert len(pc_factory.created) == 1
        assert relay.urls == [URL]

        session.close()
        await asyncio.wait_for(session.wait(), timeout=1)
        assert controller.start() is None

    @pytest.mark.asyncio
    async def test_wait_requires_start(self, relay, pc_factory):
        session = Session(URL, connector=relay, peer_connection_factory=pc_factory)

        with pytest.raises(RuntimeError, match="not been started"):
            await session.wait()

    @pytest.mark.asyncio
    async def test_run_only_once(self, relay, pc_factory, eventually):
        session = Session(URL, connector=relay, peer_connection_factory=pc_factory)
        session.start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)
        session.close()
        await asyncio.wait_for(session.wait(), timeout=1)

        with pytest.raises(RuntimeError, match="already closed"):
            await session.run()


class TestFailures:
    @pytest.mark.asyncio
    async def test_relay_never_opens(self, relay, pc_factory, tracks, failures):
        relay.error = OSError("connection refused")
        session = _controller(relay, pc_factory, tracks, failures).start()

        with pytest.raises(TransportOpenFailure):
            await asyncio.wait_for(session.wait(), timeout=1)

        assert session.state is SessionState.FAILED
        assert failures == []
        assert pc_factory.pc.closed

    @pytest.mark.asyncio
    async def test_peer_failure_notified_once(
        self, relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)
        pc = pc_factory.pc

        await pc.set_state("connected")
        await pc.set_state("failed")
        await pc.set_state("failed")
        state = await asyncio.wait_for(session.wait(), timeout=1)

        assert state is SessionState.FAILED
        assert isinstance(session.error, ConnectionFailure)
        assert failures == [True]
        assert relay.websocket.closed

    @pytest.mark.asyncio
    async def test_malformed_offer_fails_session(
        self, relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)
        pc_factory.pc.fail_remote = ValueError("Invalid SDP")

        relay.websocket.feed(OFFER)

        with pytest.raises(NegotiationFailure):
            await asyncio.wait_for(session.wait(), timeout=1)
        assert session.state is SessionState.FAILED
        assert pc_factory.pc.closed
        assert failures == []

    @pytest.mark.asyncio
    async def test_local_description_failure_fails_session(
        self, relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)
        pc_factory.pc.fail_local = ValueError("bad answer")

        relay.websocket.feed(OFFER)

        with pytest.raises(NegotiationFailure, match="local description"):
            await asyncio.wait_for(session.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_relay_close_ends_session(
        self, relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)

        relay.websocket.remote_close()
        state = await asyncio.wait_for(session.wait(), timeout=1)

        assert state is SessionState.CLOSED
        assert pc_factory.pc.closed

    @pytest.mark.asyncio
    async def test_close_while_connecting(
        self, held_relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(held_relay, pc_factory, tracks, failures).start()
        await pc_factory.pc.emit("icecandidate", _local_candidate(1))
        await eventually(lambda: session.state is SessionState.CONNECTING)

        session.close()
        state = await asyncio.wait_for(session.wait(), timeout=1)

        assert state is SessionState.CLOSED
        assert session.buffer.pending == 0
        held_relay.release()
        await asyncio.sleep(0.01)
        assert held_relay.websocket.sent == []

    @pytest.mark.asyncio
    async def test_answer_send_on_dead_relay_fails_session(
        self, relay, pc_factory, tracks, failures, eventually
    ):
        session = _controller(relay, pc_factory, tracks, failures).start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)
        relay.websocket.closed = True

        relay.websocket.feed(OFFER)

        with pytest.raises(TransportClosedError):
            await asyncio.wait_for(session.wait(), timeout=1)
        assert session.state is SessionState.FAILED
        assert isinstance(session.error, TransportClosedError)
        assert pc_factory.pc.closed

    @pytest.mark.asyncio
    async def test_local_candidate_on_dead_relay_fails_session(
        self, relay, tracks, failures, eventually
    ):
        # Real peer connection, so the candidate handler runs from its event emitter.
        controller = _controller(relay, create_peer_connection, tracks, failures)
        session = controller.start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)
        relay.websocket.closed = True

        session.engine.pc.emit("icecandidate", _local_candidate(1))

        with pytest.raises(TransportClosedError):
            await asyncio.wait_for(session.wait(), timeout=1)
        assert session.state is SessionState.FAILED
        assert relay.websocket.sent == []

    @pytest.mark.asyncio
    async def test_callback_error_fails_session(self, relay, pc_factory, eventually):
        def broken_presenter(track):
            raise RuntimeError("no display")

        session = SessionController(
            URL,
            on_remote_track=broken_presenter,
            connector=relay,
            peer_connection_factory=pc_factory,
        ).start()
        await eventually(lambda: session.state is SessionState.NEGOTIATING)

        await pc_factory.pc.emit("track", mock.MagicMock(kind="video"))

        with pytest.raises(RuntimeError, match="no display"):
            await asyncio.wait_for(session.wait(), timeout=1)
        assert session.state is SessionState.FAILED
        assert isinstance(session.error, RuntimeError)
        assert pc_factory.pc.closed
        assert relay.websocket.closed
