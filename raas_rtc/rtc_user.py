"""Entry point for the raas-rtc user client (Offerer)."""

import asyncio
from typing import Optional

from aiortc import VideoStreamTrack
from loguru import logger

from raas_rtc.events import PeerLinkCallbacks, SessionCallbacks
from raas_rtc.exceptions import LinkClosedError
from raas_rtc.peer.link import PeerLink
from raas_rtc.peer.media import MediaStream
from raas_rtc.signaling.session import SignalingSession, create_offerer_session
from raas_rtc.types import MASTER_PEER_ID

# Label under which the user publishes its own test stream
USER_STREAM_LABEL = "user"


class UserClient:
    """Connects to one lab and reports what it receives."""

    def __init__(self, send_test_pattern: bool = False):
        self.send_test_pattern = send_test_pattern
        self.session: Optional[SignalingSession] = None
        self.link: Optional[PeerLink] = None
        self.done = asyncio.Event()

    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_peer_connected=self.on_peer_connected,
            on_signaling_disconnect=self.on_signaling_disconnect,
            on_signaling_error=self.on_signaling_error,
        )

    def on_peer_connected(self, link: PeerLink) -> None:
        # Fires once the control channel is ready, so renegotiation is safe.
        logger.info(f"Connected to {link.peer_id}")
        self.link = link
        link.set_callbacks(
            PeerLinkCallbacks(
                on_remote_stream_added=self.on_remote_stream_added,
                on_remote_data_channel_opened=lambda channel: logger.info(
                    f"Remote data channel opened: {channel.label}"
                ),
                on_closed=self.on_link_closed,
            )
        )
        if self.send_test_pattern:
            link.add_stream(MediaStream([VideoStreamTrack()]), USER_STREAM_LABEL)

    def on_remote_stream_added(self, stream: MediaStream) -> None:
        kinds = ", ".join(track.kind for track in stream.get_tracks())
        logger.info(f"Remote stream {stream.id} added ({kinds})")

    def on_link_closed(self, link: PeerLink) -> None:
        logger.info(f"Link to {link.peer_id} closed")
        self.done.set()

    def on_signaling_disconnect(self) -> None:
        logger.info("Signaling disconnected")
        if self.link is not None:
            return
        pending = self.session.peer_link if self.session is not None else None
        if pending is None or pending.closed or pending.pc.remoteDescription is None:
            # The answer can no longer arrive.
            self.done.set()

    def on_signaling_error(self, error: Exception) -> None:
        logger.error(f"Signaling error: {error}")
        if isinstance(error, LinkClosedError):
            self.done.set()

    async def run(self, session: SignalingSession) -> None:
        """Start ``session`` and wait until the peer link closes."""
        self.session = session
        try:
            await session.start()
            await self.done.wait()
        finally:
            await session.stop()
            await session.close_all_peers()


def run_user(
    channel_name: str = None,
    peer_id: str = MASTER_PEER_ID,
    send_test_pattern: bool = False,
):
    """Create a UserClient and run it until the link closes or Ctrl-C.

    Args:
        channel_name: Signaling channel. Defaults to the configured channel.
        peer_id: Client id of the lab to connect to.
        send_test_pattern: Send a synthetic video track once connected.
    """

    async def main():
        client = UserClient(send_test_pattern=send_test_pattern)
        session = create_offerer_session(
            callbacks=client.callbacks(), channel_name=channel_name, remote_peer_id=peer_id
        )
        await client.run(session)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("User client interrupted by user. Shutting down...")
    finally:
        logger.info("User client exiting...")
