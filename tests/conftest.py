"""Shared fakes for relay and peer connection tests.

The fakes stand in for a live relay WebSocket and an aiortc peer connection so
the handshake can be driven step by step without network or media stacks.
"""

import asyncio
import inspect
import json

import pytest
from aiortc import RTCSessionDescription
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

ANSWER_SDP = "v=0\r\no=- 9001 2 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"

_CLOSE = object()
_DROP = object()


class FakeWebSocket:
    """In-memory relay socket. Frames fed with ``feed`` come out of the iterator."""

    def __init__(self, log=None):
        self.sent = []
        self.closed = False
        self.log = log if log is not None else []
        self._inbound = asyncio.Queue()

    def feed(self, frame):
        if not isinstance(frame, str):
            frame = json.dumps(frame)
        self._inbound.put_nowait(frame)

    def remote_close(self):
        self._inbound.put_nowait(_CLOSE)

    def drop(self):
        self._inbound.put_nowait(_DROP)

    async def send(self, text):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(text)
        self.log.append(("send", json.loads(text)))

    async def close(self):
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(_CLOSE)

    def sent_messages(self):
        return [json.loads(text) for text in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._inbound.get()
        if frame is _CLOSE:
            raise StopAsyncIteration
        if frame is _DROP:
            raise ConnectionClosedError(None, None)
        return frame


class FakeRelay:
    """Connector returning a FakeWebSocket, optionally held until released."""

    def __init__(self, hold=False, error=None, log=None):
        self.websocket = FakeWebSocket(log=log)
        self.error = error
        self.urls = []
        self._gate = asyncio.Event()
        if not hold:
            self._gate.set()

    def release(self):
        self._gate.set()

    async def __call__(self, url):
        self.urls.append(url)
        await self._gate.wait()
        if self.error is not None:
            raise self.error
        return self.websocket


class StubPeerConnection:
    """Records what the negotiation engine does to the peer connection."""

    def __init__(self, ice_servers=None, log=None):
        self.ice_servers = ice_servers
        self.log = log if log is not None else []
        self.handlers = {}
        self.connectionState = "new"
        self.remote_descriptions = []
        self.local_descriptions = []
        self.candidates = []
        self.closed = False
        self.fail_remote = None
        self.fail_answer = None
        self.fail_local = None
        self.fail_candidate = None
        self.local_gate = None

    def on(self, event, handler=None):
        def register(func):
            self.handlers.setdefault(event, []).append(func)
            return func

        if handler is None:
            return register
        return register(handler)

    async def emit(self, event, *args):
        for handler in self.handlers.get(event, []):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    async def set_state(self, state):
        self.connectionState = state
        await self.emit("connectionstatechange")

    async def setRemoteDescription(self, description):
        if self.fail_remote is not None:
            raise self.fail_remote
        self.remote_descriptions.append(description)
        self.log.append(("remote", description.type))

    async def createAnswer(self):
        if self.fail_answer is not None:
            raise self.fail_answer
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, description):
        if self.local_gate is not None:
            await self.local_gate.wait()
        if self.fail_local is not None:
            raise self.fail_local
        self.local_descriptions.append(description)
        self.log.append(("local", description.type))

    async def addIceCandidate(self, candidate):
        if self.fail_candidate is not None:
            raise self.fail_candidate
        self.candidates.append(candidate)
        self.log.append(("candidate", candidate))

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class PeerConnectionFactory:
    """Peer connection factory that keeps every stub it creates."""

    def __init__(self, log=None):
        self.log = log
        self.created = []

    def __call__(self, ice_servers):
        pc = StubPeerConnection(ice_servers, log=self.log)
        self.created.append(pc)
        return pc

    @property
    def pc(self):
        return self.created[-1]


async def _settle(rounds=20):
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _eventually(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def call_log():
    return []


@pytest.fixture
def relay(call_log):
    return FakeRelay(log=call_log)


@pytest.fixture
def held_relay(call_log):
    return FakeRelay(hold=True, log=call_log)


@pytest.fixture
def pc_factory(call_log):
    return PeerConnectionFactory(log=call_log)


@pytest.fixture
def settle():
    return _settle


@pytest.fixture
def eventually():
    return _eventually
