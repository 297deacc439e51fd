"""Shared fakes for mesh-rtc tests.

FakePeerConnection stands in for aiortc's RTCPeerConnection: it records the
order of description/candidate operations and lets tests fire the events a
real connection would emit (``track``, ``icecandidate``,
``connectionstatechange``).
"""

import asyncio
import inspect
import json
from collections import defaultdict
from types import SimpleNamespace

import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError

from mesh_rtc.client.media import LocalMediaSource

HOST_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise MediaStreamError


class FakeSender:
    def __init__(self, track):
        self.track = track
        self.replaced = []

    def replaceTrack(self, track):
        self.track = track
        self.replaced.append(track)


class FakePeerConnection:
    def __init__(self, fail_close: bool = False):
        self.handlers = defaultdict(list)
        self.operations = []
        self.senders = []
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.close_calls = 0
        self.fail_close = fail_close

    def on(self, event, f=None):
        def register(func):
            self.handlers[event].append(func)
            return func

        return register(f) if f else register

    async def emit(self, event, *args):
        for handler in self.handlers[event]:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0\r\no=offer\r\n", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp="v=0\r\no=answer\r\n", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.operations.append(("local", description.type))

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.operations.append(("remote", description.type))

    async def addIceCandidate(self, candidate):
        self.operations.append(("candidate", candidate.ip))

    async def close(self):
        self.close_calls += 1
        self.connectionState = "closed"
        if self.fail_close:
            raise RuntimeError("connection already released")


class FakeConnection:
    """Websocket stand-in for the relay side: records frames sent to it."""

    def __init__(self, inbound=()):
        self.sent = []
        self._inbound = list(inbound)

    async def send(self, message):
        self.sent.append(message)

    def messages(self):
        return [json.loads(m) for m in self.sent]

    def of_type(self, msg_type):
        return [m for m in self.messages() if m["type"] == msg_type]

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._inbound:
            yield message


class FakeClientSocket:
    """Websocket stand-in for the client side, fed through a queue."""

    def __init__(self):
        self.sent = []
        self.inbound = asyncio.Queue()
        self.closed = False

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def deliver(self, msg_type, **fields):
        await self.inbound.put(json.dumps({"type": msg_type, **fields}))

    async def close(self):
        self.closed = True
        await self.inbound.put(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.inbound.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False


def ice_event(candidate):
    return SimpleNamespace(candidate=candidate)


@pytest.fixture
def local_media():
    return LocalMediaSource([FakeTrack("audio"), FakeTrack("video")])


@pytest.fixture
def pc_factory():
    """Factory that records every FakePeerConnection it creates."""
    created = []

    def factory():
        pc = FakePeerConnection()
        created.append(pc)
        return pc

    factory.created = created
    return factory
