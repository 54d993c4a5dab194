"""Signaling session: drives the rendezvous handshake for one role.

A session owns one RendezvousChannel and produces PeerLinks. The Offerer
(user side) connects to a single remote peer; the Answerer (lab side)
accepts any number of peers, keyed by the rendezvous sender id.

Role behaviour lives in a NegotiationStrategy so that one SignalingSession
class serves both ends.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from loguru import logger

from raas_rtc.config import DEFAULT_STUN_URL, Config, get_config
from raas_rtc.events import SessionCallbacks, dispatch
from raas_rtc.exceptions import (
    LinkClosedError,
    NegotiationError,
    RTCBridgeError,
    SignalingError,
)
from raas_rtc.peer.link import PeerLink
from raas_rtc.signaling.ice_servers import (
    HttpIceServerProvider,
    IceServerProvider,
    create_peer_connection,
)
from raas_rtc.signaling.rendezvous import (
    RendezvousChannel,
    RendezvousHandlers,
    WebSocketRendezvousChannel,
)
from raas_rtc.types import (
    MASTER_PEER_ID,
    UNKNOWN_PEER_ID,
    IceServer,
    Role,
    SessionState,
)


def generate_correlation_id() -> str:
    """Correlation id for an SDP answer: the current time in milliseconds."""
    return str(int(time.time() * 1000))


class NegotiationStrategy(ABC):
    """Role-specific reaction to rendezvous events."""

    def __init__(self, session: "SignalingSession"):
        self.session = session

    async def on_open(self) -> None:
        pass

    @abstractmethod
    async def handle_offer(
        self, offer: RTCSessionDescription, sender: Optional[str], correlation_id: Optional[str]
    ) -> None:
        pass

    @abstractmethod
    async def handle_answer(self, answer: RTCSessionDescription, sender: Optional[str]) -> None:
        pass

    @abstractmethod
    async def handle_ice_candidate(self, candidate: RTCIceCandidate, sender: Optional[str]) -> None:
        pass

    @property
    @abstractmethod
    def links(self) -> Dict[str, PeerLink]:
        """Live links keyed by peer id."""


class OffererStrategy(NegotiationStrategy):
    """Single-peer client: sends the offer as soon as the rendezvous opens.

    Args:
        session: Owning session.
        remote_peer_id: Peer id of the link, also the rendezvous target.
        receive_audio: Offer to receive one audio track.
        receive_video: Offer to receive one video track.
    """

    def __init__(
        self,
        session: "SignalingSession",
        remote_peer_id: str = MASTER_PEER_ID,
        receive_audio: bool = True,
        receive_video: bool = True,
    ):
        super().__init__(session)
        self.remote_peer_id = remote_peer_id
        self.receive_audio = receive_audio
        self.receive_video = receive_video
        self.link: Optional[PeerLink] = None

    @property
    def links(self) -> Dict[str, PeerLink]:
        if self.link is None or self.link.closed:
            return {}
        return {self.link.peer_id: self.link}

    async def on_open(self) -> None:
        if self.link is not None and not self.link.closed:
            logger.warning("[OFFERER] Rendezvous reopened with a live link, not re-offering")
            return

        pc = self.session.create_peer_connection()
        link = self.session.create_link(pc, self.remote_peer_id)
        self.link = link

        if self.receive_audio:
            pc.addTransceiver("audio", direction="recvonly")
        if self.receive_video:
            pc.addTransceiver("video", direction="recvonly")
        # The initial offer needs an SCTP section for later renegotiation.
        link.create_control_channel()

        offer = await link.create_offer()
        logger.info(f"[OFFERER] Sending offer to {self.remote_peer_id}")
        await self.session.rendezvous.send_sdp_offer(offer, target=self.remote_peer_id)

    async def handle_offer(self, offer, sender, correlation_id) -> None:
        raise NegotiationError(f"Offerer received an unexpected offer from {sender}", sender)

    async def handle_answer(self, answer: RTCSessionDescription, sender: Optional[str]) -> None:
        link = self.link
        if link is None or link.closed:
            raise NegotiationError(f"Received an answer from {sender} with no pending offer", sender)

        logger.info(f"[OFFERER] Answer received from {sender}")
        await link.accept_answer(answer)
        self.session.spawn(self._announce(link))

    async def _announce(self, link: PeerLink) -> None:
        try:
            await link.await_ready_to_negotiate()
        except LinkClosedError as e:
            self.session.report(e)
            return
        logger.info(f"[OFFERER] Peer {link.peer_id} connected")
        dispatch(self.session.callbacks.on_peer_connected, link)

    async def handle_ice_candidate(self, candidate: RTCIceCandidate, sender: Optional[str]) -> None:
        link = self.link
        if link is None:
            logger.debug(f"[OFFERER] Dropping ICE candidate from {sender}: no link yet")
            return
        if sender is not None and sender != link.peer_id:
            logger.debug(f"[OFFERER] Dropping ICE candidate for unknown peer {sender}")
            return
        await link.add_ice_candidate(candidate)


class AnswererStrategy(NegotiationStrategy):
    """Multi-peer host: answers every offer, one link per sender."""

    def __init__(self, session: "SignalingSession"):
        super().__init__(session)
        self.peers: Dict[str, PeerLink] = {}

    @property
    def links(self) -> Dict[str, PeerLink]:
        return {peer_id: link for peer_id, link in self.peers.items() if not link.closed}

    async def handle_offer(
        self, offer: RTCSessionDescription, sender: Optional[str], correlation_id: Optional[str]
    ) -> None:
        peer_id = sender or UNKNOWN_PEER_ID
        logger.info(f"[ANSWERER] Offer received from {peer_id}")

        existing = self.peers.pop(peer_id, None)
        if existing is not None:
            logger.info(f"[ANSWERER] Replacing existing link for {peer_id}")
            await existing.close()

        pc = self.session.create_peer_connection()
        link = self.session.create_link(pc, peer_id, on_close=self._forget)
        self.peers[peer_id] = link
        try:
            answer = await link.accept_offer(offer)
        except RTCBridgeError:
            self.peers.pop(peer_id, None)
            await link.close()
            raise

        correlation_id = correlation_id or generate_correlation_id()
        logger.info(f"[ANSWERER] Sending answer to {peer_id} (correlation id {correlation_id})")
        await self.session.rendezvous.send_sdp_answer(
            answer, target=sender, correlation_id=correlation_id
        )
        dispatch(self.session.callbacks.on_peer_connected, link)

    def _forget(self, link: PeerLink) -> None:
        # A replacement link may already hold the slot.
        if self.peers.get(link.peer_id) is link:
            del self.peers[link.peer_id]
            logger.debug(f"[ANSWERER] Forgot closed link for {link.peer_id}")

    async def handle_answer(self, answer, sender) -> None:
        raise NegotiationError(f"Answerer received an unexpected answer from {sender}", sender)

    async def handle_ice_candidate(self, candidate: RTCIceCandidate, sender: Optional[str]) -> None:
        peer_id = sender or UNKNOWN_PEER_ID
        link = self.peers.get(peer_id)
        if link is None or link.closed:
            logger.warning(f"[ANSWERER] Dropping ICE candidate for unknown peer {peer_id}")
            return
        await link.add_ice_candidate(candidate)


class SignalingSession:
    """One rendezvous connection and the peer links it produces.

    Args:
        role: Local role.
        rendezvous: Channel to the signaling service.
        ice_provider: Source of TURN servers. May be None for STUN only.
        callbacks: Collaborator notifications.
        channel_name: Signaling channel name.
        client_id: This endpoint's id on the channel.
        stun_url: STUN server always included in the ICE server list.
        peer_connection_factory: Builds an RTCPeerConnection from a list of
            IceServer.
        remote_peer_id: Offerer only. Id of the remote peer.
        receive_audio: Offerer only. Request an inbound audio track.
        receive_video: Offerer only. Request an inbound video track.
    """

    def __init__(
        self,
        role: Role,
        rendezvous: RendezvousChannel,
        ice_provider: Optional[IceServerProvider] = None,
        callbacks: Optional[SessionCallbacks] = None,
        channel_name: Optional[str] = None,
        client_id: Optional[str] = None,
        stun_url: Optional[str] = DEFAULT_STUN_URL,
        peer_connection_factory: Callable[[List[IceServer]], RTCPeerConnection] = create_peer_connection,
        remote_peer_id: str = MASTER_PEER_ID,
        receive_audio: bool = True,
        receive_video: bool = True,
    ):
        self.role = Role(role)
        self.rendezvous = rendezvous
        self.ice_provider = ice_provider
        self.callbacks = callbacks or SessionCallbacks()
        self.channel_name = channel_name
        self.client_id = client_id
        self.stun_url = stun_url
        self.peer_connection_factory = peer_connection_factory
        self.state = SessionState.IDLE
        self.ice_servers: List[IceServer] = []

        self._prefix = self.role.log_prefix
        self._disconnect_fired = False
        self._tasks = set()

        if self.role == Role.OFFERER:
            self.strategy: NegotiationStrategy = OffererStrategy(
                self,
                remote_peer_id=remote_peer_id,
                receive_audio=receive_audio,
                receive_video=receive_video,
            )
        else:
            self.strategy = AnswererStrategy(self)

    def __repr__(self) -> str:
        return (
            f"SignalingSession(role={self.role.value}, channel={self.channel_name!r}, "
            f"client_id={self.client_id!r}, state={self.state.value})"
        )

    @property
    def peers(self) -> Dict[str, PeerLink]:
        """Copy of the live peer links, keyed by peer id."""
        return dict(self.strategy.links)

    @property
    def peer_link(self) -> Optional[PeerLink]:
        """The Offerer's link, if any."""
        if isinstance(self.strategy, OffererStrategy):
            return self.strategy.link
        return None

    # ===== Helpers shared with the strategies =====

    def spawn(self, coro) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def report(self, error: Exception) -> None:
        logger.error(f"{self._prefix} {type(error).__name__}: {error}")
        dispatch(self.callbacks.on_signaling_error, error)

    def create_peer_connection(self) -> RTCPeerConnection:
        return self.peer_connection_factory(self.ice_servers)

    def create_link(
        self, pc: RTCPeerConnection, peer_id: str, on_close: Optional[Callable] = None
    ) -> PeerLink:
        return PeerLink(
            pc,
            peer_id,
            send_ice_candidate=self._forward_ice_candidate,
            on_error=self.report,
            on_close=on_close,
        )

    # ===== Lifecycle =====

    async def start(self) -> None:
        """Fetch ICE servers and open the rendezvous channel.

        Raises:
            SignalingError: If the session is closed or the channel cannot
                be opened. In the latter case the session is back in IDLE
                and ``start()`` may be called again.
        """
        if self.state == SessionState.CLOSED:
            raise SignalingError("Cannot start a closed signaling session")
        if self.state != SessionState.IDLE:
            logger.warning(f"{self._prefix} Session already {self.state.value}")
            return

        self.state = SessionState.CONNECTING
        logger.info(f"{self._prefix} Connecting to channel {self.channel_name} as {self.client_id}")

        ice_servers = await self._gather_ice_servers()
        if self.state == SessionState.CLOSED:
            logger.debug(f"{self._prefix} Session stopped while fetching ICE servers")
            return
        self.ice_servers = ice_servers

        self.rendezvous.bind(
            RendezvousHandlers(
                on_open=self._on_open,
                on_close=self._on_close,
                on_error=self._on_error,
                on_status=self._on_status,
                on_sdp_offer=self._on_sdp_offer,
                on_sdp_answer=self._on_sdp_answer,
                on_ice_candidate=self._on_ice_candidate,
            )
        )
        try:
            await self.rendezvous.open()
        except SignalingError:
            if self.state == SessionState.CONNECTING:
                self.state = SessionState.IDLE
            raise

    async def _gather_ice_servers(self) -> List[IceServer]:
        ice_servers = [IceServer(urls=self.stun_url)] if self.stun_url else []
        if self.ice_provider is None:
            return ice_servers

        try:
            ice_servers.extend(await self.ice_provider.fetch_ice_servers(self.channel_name))
        except Exception as e:
            logger.warning(f"{self._prefix} ICE server provider failed, using STUN only: {e}")
        return ice_servers

    async def stop(self) -> None:
        """Close the rendezvous channel. Live peer links stay open."""
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        logger.info(f"{self._prefix} Stopping signaling session")
        try:
            await self.rendezvous.close()
        finally:
            self._fire_disconnect()

    async def close_all_peers(self) -> None:
        """Close every live peer link."""
        links = list(self.strategy.links.values())
        if links:
            await asyncio.gather(*(link.close() for link in links))

    async def send_ice_candidate(
        self, candidate: RTCIceCandidate, target: Optional[str] = None
    ) -> None:
        if self.state == SessionState.CLOSED:
            raise SignalingError("Signaling session is closed")
        await self.rendezvous.send_ice_candidate(candidate, target=target)

    async def _forward_ice_candidate(self, candidate: RTCIceCandidate, peer_id: str) -> None:
        try:
            await self.send_ice_candidate(candidate, target=peer_id)
        except SignalingError as e:
            self.report(e)

    def _fire_disconnect(self) -> None:
        if self._disconnect_fired:
            return
        self._disconnect_fired = True
        dispatch(self.callbacks.on_signaling_disconnect)

    # ===== Rendezvous handlers =====

    async def _on_open(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.OPEN
        logger.info(f"{self._prefix} Rendezvous open on channel {self.channel_name}")
        try:
            await self.strategy.on_open()
        except RTCBridgeError as e:
            self.report(e)

    def _on_close(self) -> None:
        logger.info(f"{self._prefix} Rendezvous closed")
        self.state = SessionState.CLOSED
        self._fire_disconnect()

    def _on_error(self, error: Exception) -> None:
        self.report(error)

    def _on_status(self, status: dict) -> None:
        self.report(SignalingError(f"Rendezvous status: {status}"))

    async def _on_sdp_offer(
        self, offer: RTCSessionDescription, sender: Optional[str], correlation_id: Optional[str]
    ) -> None:
        if self.state == SessionState.CLOSED:
            logger.debug(f"{self._prefix} Ignoring offer from {sender}: session closed")
            return
        try:
            await self.strategy.handle_offer(offer, sender, correlation_id)
        except RTCBridgeError as e:
            self.report(e)

    async def _on_sdp_answer(self, answer: RTCSessionDescription, sender: Optional[str]) -> None:
        if self.state == SessionState.CLOSED:
            logger.debug(f"{self._prefix} Ignoring answer from {sender}: session closed")
            return
        try:
            await self.strategy.handle_answer(answer, sender)
        except RTCBridgeError as e:
            self.report(e)

    async def _on_ice_candidate(self, candidate: RTCIceCandidate, sender: Optional[str]) -> None:
        if self.state == SessionState.CLOSED:
            return
        try:
            await self.strategy.handle_ice_candidate(candidate, sender)
        except RTCBridgeError as e:
            self.report(e)


def create_offerer_session(
    callbacks: Optional[SessionCallbacks] = None,
    channel_name: Optional[str] = None,
    client_id: Optional[str] = None,
    remote_peer_id: str = MASTER_PEER_ID,
    config: Optional[Config] = None,
    rendezvous: Optional[RendezvousChannel] = None,
    ice_provider: Optional[IceServerProvider] = None,
    **kwargs,
) -> SignalingSession:
    """Create a user-side session that offers to ``remote_peer_id``.

    Endpoints, channel and STUN server default to the loaded configuration.
    Extra keyword arguments are passed to SignalingSession.
    """
    config = config or get_config()
    channel_name = channel_name or config.channel_name
    client_id = client_id or f"user-{uuid.uuid4().hex[:8]}"
    if rendezvous is None:
        rendezvous = WebSocketRendezvousChannel(
            config.signaling_websocket, channel_name, client_id, Role.OFFERER
        )
    if ice_provider is None:
        ice_provider = HttpIceServerProvider(config.get_http_endpoint("/ice-servers"))

    return SignalingSession(
        Role.OFFERER,
        rendezvous,
        ice_provider=ice_provider,
        callbacks=callbacks,
        channel_name=channel_name,
        client_id=client_id,
        stun_url=config.stun_url,
        remote_peer_id=remote_peer_id,
        **kwargs,
    )


def create_answerer_session(
    callbacks: Optional[SessionCallbacks] = None,
    channel_name: Optional[str] = None,
    client_id: str = MASTER_PEER_ID,
    config: Optional[Config] = None,
    rendezvous: Optional[RendezvousChannel] = None,
    ice_provider: Optional[IceServerProvider] = None,
    **kwargs,
) -> SignalingSession:
    """Create a lab-side session that answers every peer on the channel."""
    config = config or get_config()
    channel_name = channel_name or config.channel_name
    if rendezvous is None:
        rendezvous = WebSocketRendezvousChannel(
            config.signaling_websocket, channel_name, client_id, Role.ANSWERER
        )
    if ice_provider is None:
        ice_provider = HttpIceServerProvider(config.get_http_endpoint("/ice-servers"))

    return SignalingSession(
        Role.ANSWERER,
        rendezvous,
        ice_provider=ice_provider,
        callbacks=callbacks,
        channel_name=channel_name,
        client_id=client_id,
        stun_url=config.stun_url,
        **kwargs,
    )
