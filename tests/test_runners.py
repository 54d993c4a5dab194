"""Tests for the lab and user runners."""

import asyncio
from unittest import mock

import pytest

from raas_rtc.events import PeerLinkCallbacks
from raas_rtc.exceptions import LinkClosedError, NegotiationError
from raas_rtc.rtc_lab import CAMERA_LABEL, LabHost
from raas_rtc.rtc_user import USER_STREAM_LABEL, UserClient
from raas_rtc.signaling.session import SignalingSession
from raas_rtc.types import Role

from conftest import FakeTrack, settle


def make_link(peer_id="user-1"):
    link = mock.Mock()
    link.peer_id = peer_id
    link.await_ready_to_negotiate = mock.AsyncMock(return_value=None)
    return link


class TestLabHost:
    """Tests for LabHost."""

    @pytest.mark.asyncio
    async def test_streams_test_pattern_when_ready(self):
        """With a test pattern each peer gets a 'cam' stream once ready."""
        host = LabHost(test_pattern=True)
        link = make_link()
        with mock.patch("raas_rtc.rtc_lab.VideoStreamTrack", lambda: FakeTrack("video")):
            await host.on_peer_connected(link)

        link.await_ready_to_negotiate.assert_awaited_once()
        stream, label = link.add_stream.call_args[0]
        assert label == CAMERA_LABEL == "cam"
        assert [t.kind for t in stream.get_tracks()] == ["video"]
        assert isinstance(link.set_callbacks.call_args[0][0], PeerLinkCallbacks)

    @pytest.mark.asyncio
    async def test_no_stream_without_test_pattern(self):
        """Without a test pattern nothing is sent."""
        host = LabHost()
        link = make_link()
        await host.on_peer_connected(link)
        link.add_stream.assert_not_called()

    @pytest.mark.asyncio
    async def test_link_closed_before_ready(self):
        """A link that closes before it is ready gets no stream."""
        host = LabHost(test_pattern=True)
        link = make_link()
        link.await_ready_to_negotiate.side_effect = LinkClosedError("gone", "user-1")
        await host.on_peer_connected(link)
        link.add_stream.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_stops_on_disconnect(self):
        """run() returns once signaling disconnects and cleans up."""
        host = LabHost()
        session = mock.Mock()
        session.start = mock.AsyncMock(side_effect=lambda: host.on_signaling_disconnect())
        session.stop = mock.AsyncMock()
        session.close_all_peers = mock.AsyncMock()

        await host.run(session)

        session.stop.assert_awaited_once()
        session.close_all_peers.assert_awaited_once()


class TestUserClient:
    """Tests for UserClient."""

    def test_sends_test_pattern_on_connect(self):
        """The user stream is added as soon as the link is connected."""
        client = UserClient(send_test_pattern=True)
        link = make_link("master")
        with mock.patch("raas_rtc.rtc_user.VideoStreamTrack", lambda: FakeTrack("video")):
            client.on_peer_connected(link)

        assert client.link is link
        assert link.add_stream.call_args[0][1] == USER_STREAM_LABEL

    def test_link_closed_finishes(self):
        """Closing the link ends the run."""
        client = UserClient()
        client.on_link_closed(make_link("master"))
        assert client.done.is_set()

    def test_link_closed_before_ready_finishes(self):
        """A link that closes before it is ready ends the run."""
        client = UserClient()
        client.on_signaling_error(LinkClosedError("closed before ready", "master"))
        assert client.done.is_set()

    def test_other_errors_keep_running(self):
        """Errors other than a closed link are only logged."""
        client = UserClient()
        client.on_signaling_error(NegotiationError("bad candidate", "master"))
        assert not client.done.is_set()

    def test_disconnect_after_connect_keeps_running(self):
        """Losing signaling once connected leaves the link to decide."""
        client = UserClient()
        client.on_peer_connected(make_link("master"))
        client.on_signaling_disconnect()
        assert not client.done.is_set()

    @pytest.mark.asyncio
    async def test_disconnect_before_answer_finishes_run(self, rendezvous, pc_factory):
        """Run returns when signaling drops before the lab answers."""
        client = UserClient()
        session = SignalingSession(
            Role.OFFERER,
            rendezvous,
            callbacks=client.callbacks(),
            stun_url="stun:stun.example.org:3478",
            peer_connection_factory=pc_factory,
        )

        task = asyncio.ensure_future(client.run(session))
        await settle()
        await rendezvous.simulate_open()
        assert rendezvous.sent_of_type("offer")
        await rendezvous.close()

        await asyncio.wait_for(task, timeout=1)
        assert client.done.is_set()
        assert session.peer_link.closed
