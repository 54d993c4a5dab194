"""Shared fakes for raas-rtc tests.

FakePeerConnection mimics the parts of aiortc's RTCPeerConnection that
PeerLink and SignalingSession use. It is built on pyee's AsyncIOEventEmitter,
the emitter aiortc itself uses, so handlers run exactly as they would
against the real engine. Two fakes joined with ``connect_pair`` deliver data
channels, control messages and tracks to each other.
"""

import asyncio
import itertools
import uuid
from types import SimpleNamespace

import pytest
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

from raas_rtc.events import invoke
from raas_rtc.exceptions import SignalingError
from raas_rtc.signaling.rendezvous import RendezvousChannel

RTPMAP = {"audio": "a=rtpmap:96 opus/48000/2", "video": "a=rtpmap:96 VP8/90000"}


class FakeTrack:
    """Stand-in for aiortc.MediaStreamTrack."""

    def __init__(self, kind="video", track_id=None):
        self.kind = kind
        self.id = track_id or str(uuid.uuid4())
        self.readyState = "live"

    def stop(self):
        self.readyState = "ended"


class FakeDataChannel(AsyncIOEventEmitter):
    """Data channel whose ``send`` is delivered to its paired channel."""

    def __init__(self, label):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.sent = []
        self.peer = None

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def send(self, data):
        if self.readyState != "open":
            raise InvalidStateError("RTCDataChannel is not open")
        self.sent.append(data)
        if self.peer is not None:
            self.peer.emit("message", data)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")


class FakeSender:
    def __init__(self, track, mid):
        self.track = track
        self.mid = mid
        self._stream_id = str(uuid.uuid4())


class FakePeerConnection(AsyncIOEventEmitter):
    """Minimal RTCPeerConnection with a signaling state machine."""

    _ids = itertools.count()

    def __init__(self, ice_servers=None):
        super().__init__()
        self.ice_servers = ice_servers
        self.name = f"pc{next(self._ids)}"
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.senders = []
        self.transceivers = []
        self.data_channels = []
        self.added_candidates = []
        self.remote = None
        self.close_calls = 0
        self._mids = itertools.count()
        self._delivered_tracks = set()
        self._delivered_channels = set()

    # ----- media and channels -----

    def addTrack(self, track):
        if any(sender.track is track for sender in self.senders):
            raise InvalidAccessError("Track already has a sender")
        sender = FakeSender(track, f"{self.name}-{next(self._mids)}")
        self.senders.append(sender)
        return sender

    def addTransceiver(self, kind, direction="sendrecv"):
        transceiver = SimpleNamespace(
            kind=kind,
            direction=direction,
            mid=f"{self.name}-{next(self._mids)}",
            receiver=SimpleNamespace(track=None),
        )
        self.transceivers.append(transceiver)
        return transceiver

    def getSenders(self):
        return list(self.senders)

    def getTransceivers(self):
        return list(self.transceivers)

    def createDataChannel(self, label):
        channel = FakeDataChannel(label)
        self.data_channels.append(channel)
        return channel

    # ----- offer / answer -----

    def _build_sdp(self):
        lines = ["v=0", "o=- 0 0 IN IP4 0.0.0.0", "s=-", "t=0 0"]
        for sender in self.senders:
            kind = sender.track.kind
            lines += [
                f"m={kind} 9 UDP/TLS/RTP/SAVPF 96",
                "c=IN IP4 0.0.0.0",
                f"a=mid:{sender.mid}",
                f"a=msid:{sender._stream_id} {sender.track.id}",
                RTPMAP[kind],
            ]
        for transceiver in self.transceivers:
            if transceiver.direction != "recvonly":
                continue
            lines += [
                f"m={transceiver.kind} 9 UDP/TLS/RTP/SAVPF 96",
                "c=IN IP4 0.0.0.0",
                f"a=mid:{transceiver.mid}",
                "a=recvonly",
                RTPMAP[transceiver.kind],
            ]
        if self.data_channels:
            lines += [
                "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
                "c=IN IP4 0.0.0.0",
                "a=mid:data",
            ]
        return "\r\n".join(lines) + "\r\n"

    async def createOffer(self):
        return RTCSessionDescription(sdp=self._build_sdp(), type="offer")

    async def createAnswer(self):
        if self.signalingState != "have-remote-offer":
            raise InvalidStateError(f"Cannot create answer in {self.signalingState}")
        return RTCSessionDescription(sdp=self._build_sdp(), type="answer")

    async def setLocalDescription(self, description):
        if description.type == "offer":
            if self.signalingState != "stable":
                raise InvalidStateError(f"Cannot set local offer in {self.signalingState}")
            self.signalingState = "have-local-offer"
        else:
            if self.signalingState != "have-remote-offer":
                raise InvalidStateError(f"Cannot set local answer in {self.signalingState}")
            self.signalingState = "stable"
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if "invalid" in description.sdp:
            raise ValueError("Invalid SDP")
        if description.type == "offer":
            if self.signalingState != "stable":
                raise InvalidStateError(f"Cannot set remote offer in {self.signalingState}")
            self.signalingState = "have-remote-offer"
        else:
            if self.signalingState != "have-local-offer":
                raise InvalidStateError(f"Cannot set remote answer in {self.signalingState}")
            self.signalingState = "stable"
        self.remoteDescription = description
        self._deliver_from_remote()

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError("No remote description")
        self.added_candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        if self.connectionState == "closed":
            return
        self.signalingState = "closed"
        self.set_connection_state("closed")

    # ----- simulation helpers -----

    def set_connection_state(self, state):
        self.connectionState = state
        self.emit("connectionstatechange")

    def _deliver_from_remote(self):
        if self.remote is None:
            return
        for sender in self.remote.senders:
            if sender.track.id in self._delivered_tracks:
                continue
            self._delivered_tracks.add(sender.track.id)
            track = FakeTrack(sender.track.kind, sender.track.id)
            self.transceivers.append(
                SimpleNamespace(
                    kind=track.kind,
                    direction="recvonly",
                    mid=sender.mid,
                    receiver=SimpleNamespace(track=track),
                )
            )
            self.emit("track", track)
        if self.connectionState == "connected":
            self._deliver_channels_from_remote()

    def _deliver_channels_from_remote(self):
        for channel in self.remote.data_channels:
            if id(channel) in self._delivered_channels:
                continue
            self._delivered_channels.add(id(channel))
            twin = FakeDataChannel(channel.label)
            channel.peer = twin
            twin.peer = channel
            self.emit("datachannel", twin)
            channel.open()
            twin.open()


def connect_pair(a, b):
    """Mark two fakes connected and deliver their data channels both ways."""
    a.remote = b
    b.remote = a
    a.set_connection_state("connected")
    b.set_connection_state("connected")
    b._deliver_channels_from_remote()
    a._deliver_channels_from_remote()


async def settle(rounds=20):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeRendezvousChannel(RendezvousChannel):
    """Records outgoing messages; tests drive inbound handlers directly."""

    def __init__(self, fail_open=False):
        super().__init__()
        self.fail_open = fail_open
        self.open_calls = 0
        self.closed = False
        self.sent = []

    async def open(self):
        self.open_calls += 1
        if self.fail_open:
            raise SignalingError("Rendezvous unreachable")

    async def close(self):
        self.closed = True
        await invoke(self.handlers.on_close)

    async def simulate_open(self):
        await invoke(self.handlers.on_open)

    async def send_sdp_offer(self, offer, target=None):
        self.sent.append(("offer", offer, target, None))

    async def send_sdp_answer(self, answer, target=None, correlation_id=None):
        self.sent.append(("answer", answer, target, correlation_id))

    async def send_ice_candidate(self, candidate, target=None):
        self.sent.append(("candidate", candidate, target, None))

    def sent_of_type(self, msg_type):
        return [message for message in self.sent if message[0] == msg_type]


class PeerConnectionFactory:
    """Peer connection factory that remembers what it built."""

    def __init__(self):
        self.created = []
        self.ice_servers = []

    def __call__(self, ice_servers):
        self.ice_servers.append(ice_servers)
        pc = FakePeerConnection(ice_servers)
        self.created.append(pc)
        return pc


@pytest.fixture
def fake_pc():
    return FakePeerConnection()


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


@pytest.fixture
def rendezvous():
    return FakeRendezvousChannel()
