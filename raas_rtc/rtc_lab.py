"""Entry point for the raas-rtc lab host (Answerer)."""

import asyncio
from typing import Optional

from aiortc import VideoStreamTrack
from loguru import logger

from raas_rtc.events import PeerLinkCallbacks, SessionCallbacks
from raas_rtc.exceptions import LinkClosedError
from raas_rtc.peer.link import PeerLink
from raas_rtc.peer.media import MediaStream
from raas_rtc.signaling.session import SignalingSession, create_answerer_session
from raas_rtc.types import MASTER_PEER_ID

# Label under which the lab publishes its camera stream
CAMERA_LABEL = "cam"


class LabHost:
    """Answers every user on a channel and optionally streams a test pattern.

    Args:
        test_pattern: Send a synthetic video stream to each peer once its
            control channel is ready.
    """

    def __init__(self, test_pattern: bool = False):
        self.test_pattern = test_pattern
        self.session: Optional[SignalingSession] = None
        self.disconnected = asyncio.Event()

    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_peer_connected=self.on_peer_connected,
            on_signaling_disconnect=self.on_signaling_disconnect,
            on_signaling_error=self.on_signaling_error,
        )

    async def on_peer_connected(self, link: PeerLink) -> None:
        logger.info(f"Peer {link.peer_id} connected")
        link.set_callbacks(
            PeerLinkCallbacks(
                on_remote_data_channel_opened=lambda channel: logger.info(
                    f"Peer {link.peer_id} opened data channel {channel.label}"
                ),
                on_closed=lambda closed: logger.info(f"Peer {closed.peer_id} left"),
            )
        )
        if not self.test_pattern:
            return

        try:
            await link.await_ready_to_negotiate()
        except LinkClosedError as e:
            logger.warning(f"Not sending test pattern: {e}")
            return
        link.add_stream(MediaStream([VideoStreamTrack()]), CAMERA_LABEL)
        logger.info(f"Streaming test pattern to {link.peer_id}")

    def on_signaling_disconnect(self) -> None:
        logger.info("Signaling disconnected")
        self.disconnected.set()

    def on_signaling_error(self, error: Exception) -> None:
        logger.error(f"Signaling error: {error}")

    async def run(self, session: SignalingSession) -> None:
        """Start ``session`` and serve until the rendezvous disconnects."""
        self.session = session
        try:
            await session.start()
            await self.disconnected.wait()
        finally:
            await session.stop()
            await session.close_all_peers()


def run_lab(
    channel_name: str = None,
    client_id: str = MASTER_PEER_ID,
    test_pattern: bool = False,
):
    """Create a LabHost and serve until interrupted.

    Args:
        channel_name: Signaling channel. Defaults to the configured channel.
        client_id: Id the lab registers under; users target it.
        test_pattern: Stream a synthetic video track to every peer.
    """

    async def main():
        host = LabHost(test_pattern=test_pattern)
        session = create_answerer_session(
            callbacks=host.callbacks(), channel_name=channel_name, client_id=client_id
        )
        await host.run(session)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Lab interrupted by user. Shutting down...")
    finally:
        logger.info("Lab exiting...")
