"""Peer link: one established peer connection to exactly one remote endpoint.

The PeerLink owns the connection's streams, data channels and negotiation
state after the rendezvous handshake. The rendezvous service only brokers a
single offer/answer pair per peer, so every later renegotiation is carried
over the in-band ``metadata`` control channel (see ``raas_rtc.protocol``).

Negotiation state machine
-------------------------

::

    STABLE ──create_offer()──────────▶ AWAITING_REMOTE_ANSWER ──accept_answer()──▶ STABLE
    STABLE ──accept_offer()──────────▶ AWAITING_LOCAL_ANSWER  ──answer sent──────▶ STABLE
    STABLE ──renegotiation deferred──▶ RENEGOTIATION_PENDING  ──control ready────▶ (offer)

Only one offer is ever in flight. Renegotiation requested before the control
channel is ready, or while another exchange is in progress, is remembered and
serviced as soon as both conditions clear.
"""

import asyncio
from typing import Callable, Dict, List, Optional, Set, Union

from aiortc import RTCDataChannel, RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from loguru import logger

from raas_rtc.events import PeerLinkCallbacks, dispatch
from raas_rtc.exceptions import (
    ControlChannelError,
    LinkClosedError,
    NegotiationError,
    ReservedLabelError,
)
from raas_rtc.peer.control_channel import ControlChannel
from raas_rtc.peer.media import MediaStream, parse_msids, resolve_stream_id, tag_sender
from raas_rtc.protocol import candidate_from_dict
from raas_rtc.types import MASTER_PEER_ID, METADATA_LABEL, NegotiationState

# Map of RTCPeerConnection.signalingState to the link's negotiation state
SIGNALING_TO_NEGOTIATION = {
    "stable": NegotiationState.STABLE,
    "have-local-offer": NegotiationState.AWAITING_REMOTE_ANSWER,
    "have-remote-offer": NegotiationState.AWAITING_LOCAL_ANSWER,
    "closed": NegotiationState.STABLE,
}


class PeerLink:
    """Wraps one RTCPeerConnection after the initial handshake.

    Args:
        pc: The peer connection. The link registers its own handlers on it.
        peer_id: Id of the remote endpoint. Defaults to ``"master"``.
        send_ice_candidate: Called with ``(candidate, peer_id)`` for local
            candidates the engine trickles.
        on_error: Called with negotiation errors that cannot be raised to a
            caller, e.g. a malformed renegotiation offer.
        on_close: Called with the link once it has closed. Owners use it to
            drop their reference; collaborators use ``callbacks.on_closed``.
    """

    def __init__(
        self,
        pc: RTCPeerConnection,
        peer_id: Optional[str] = None,
        send_ice_candidate: Optional[Callable] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_close: Optional[Callable[["PeerLink"], None]] = None,
    ):
        self.pc = pc
        self.peer_id = peer_id or MASTER_PEER_ID
        self.negotiation_state = NegotiationState.STABLE
        self.local_streams: Dict[str, MediaStream] = {}
        self.remote_streams: Dict[str, MediaStream] = {}
        self.data_channels: Dict[str, RTCDataChannel] = {}
        self.control_channel: Optional[ControlChannel] = None
        self.callbacks = PeerLinkCallbacks()
        self.closed = False

        self._send_ice_candidate = send_ice_candidate
        self._on_error = on_error
        self._on_close = on_close
        self._remote_channel_labels: Set[str] = set()
        self._pending_candidates: List[RTCIceCandidate] = []
        self._retired_streams: List[MediaStream] = []
        self._remote_msids: Dict[str, str] = {}
        self._renegotiation_needed = False
        self._negotiation_lock = asyncio.Lock()
        self._ready_event = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._tasks: Set[asyncio.Future] = set()

        pc.on("track", self._on_track)
        pc.on("datachannel", self._on_datachannel)
        pc.on("connectionstatechange", self._on_connection_state_change)
        pc.on("icecandidate", self._on_icecandidate)

        logger.info(f"[PEER {self.peer_id}] Peer link created")

    def __repr__(self) -> str:
        return (
            f"PeerLink(peer_id={self.peer_id!r}, state={self.negotiation_state.value}, "
            f"closed={self.closed})"
        )

    @property
    def ready_to_negotiate(self) -> bool:
        return self.control_channel is not None and self.control_channel.ready

    def set_callbacks(self, callbacks: PeerLinkCallbacks) -> None:
        """Bind collaborator callbacks.

        Remote streams and data channels that arrived before binding are
        replayed to the new callbacks.
        """
        self.callbacks = callbacks
        for stream in self.remote_streams.values():
            dispatch(callbacks.on_remote_stream_added, stream)
        for label in sorted(self._remote_channel_labels):
            dispatch(callbacks.on_remote_data_channel_opened, self.data_channels[label])

    # ===== Background task helpers =====

    def _spawn(self, coro) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _report(self, error: Exception) -> None:
        logger.error(f"[PEER {self.peer_id}] {error}")
        dispatch(self._on_error, error)

    def _sync_state(self) -> None:
        """Re-derive the negotiation state from the engine after a failure."""
        state = SIGNALING_TO_NEGOTIATION.get(
            self.pc.signalingState, NegotiationState.STABLE
        )
        if state == NegotiationState.STABLE and self._renegotiation_needed:
            state = NegotiationState.RENEGOTIATION_PENDING
        self.negotiation_state = state

    # ===== Control channel =====

    def create_control_channel(self) -> ControlChannel:
        """Create the ``metadata`` data channel from this side.

        Must be called before the initial offer so the offer carries an SCTP
        section.
        """
        channel = self.pc.createDataChannel(METADATA_LABEL)
        return self._bind_control_channel(channel)

    def _bind_control_channel(self, channel: RTCDataChannel) -> ControlChannel:
        self.control_channel = ControlChannel(
            channel,
            on_sdp_offer=self._on_control_offer,
            on_sdp_answer=self._on_control_answer,
            on_ready=self._on_control_ready,
            on_error=self._report,
            peer_id=self.peer_id,
        )
        return self.control_channel

    def _on_control_ready(self) -> None:
        self._ready_event.set()
        self._service_pending()

    async def await_ready_to_negotiate(self) -> None:
        """Wait until the control channel has completed its probe exchange.

        Raises:
            LinkClosedError: If the link closes first.
        """
        if self.closed:
            raise LinkClosedError(f"Peer link {self.peer_id} is closed", self.peer_id)
        if self.ready_to_negotiate:
            return

        ready = asyncio.ensure_future(self._ready_event.wait())
        closed = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({ready, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            closed.cancel()

        if self.closed or not self._ready_event.is_set():
            raise LinkClosedError(
                f"Peer link {self.peer_id} closed before it was ready to negotiate",
                self.peer_id,
            )

    # ===== Offer / answer =====

    async def create_offer(self) -> RTCSessionDescription:
        """Create and apply a local offer.

        Returns:
            The local description to send to the remote peer.

        Raises:
            NegotiationError: If an exchange is already in flight or the
                engine fails.
        """
        async with self._negotiation_lock:
            return await self._create_offer()

    async def _create_offer(self) -> RTCSessionDescription:
        if self.closed:
            raise LinkClosedError(f"Peer link {self.peer_id} is closed", self.peer_id)
        if self.negotiation_state not in (
            NegotiationState.STABLE,
            NegotiationState.RENEGOTIATION_PENDING,
        ):
            raise NegotiationError(
                f"Cannot create an offer in state {self.negotiation_state.value}",
                self.peer_id,
            )

        self.negotiation_state = NegotiationState.AWAITING_REMOTE_ANSWER
        try:
            await self.pc.setLocalDescription(await self.pc.createOffer())
        except Exception as e:
            self._sync_state()
            raise NegotiationError(f"Failed to create offer: {e}", self.peer_id) from e

        logger.debug(f"[PEER {self.peer_id}] Local offer created")
        return self.pc.localDescription

    async def accept_offer(self, offer: RTCSessionDescription) -> RTCSessionDescription:
        """Apply a remote offer and produce the answer.

        The answer is only created after the remote description is confirmed
        applied.

        Returns:
            The local answer to send back.

        Raises:
            NegotiationError: On glare (a local offer is outstanding), a
                non-offer description, or any engine failure.
        """
        async with self._negotiation_lock:
            if self.closed:
                raise LinkClosedError(f"Peer link {self.peer_id} is closed", self.peer_id)
            if offer.type != "offer":
                raise NegotiationError(
                    f"Expected an offer, got {offer.type!r}", self.peer_id
                )
            if self.negotiation_state == NegotiationState.AWAITING_REMOTE_ANSWER:
                # No rollback in aiortc: both offers stay outstanding.
                raise NegotiationError(
                    "Offer collided with our outstanding offer; renegotiation on this "
                    "link is stalled until it is closed and reconnected",
                    self.peer_id,
                )
            if self.negotiation_state not in (
                NegotiationState.STABLE,
                NegotiationState.RENEGOTIATION_PENDING,
            ):
                raise NegotiationError(
                    f"Received an offer in state {self.negotiation_state.value}",
                    self.peer_id,
                )

            self.negotiation_state = NegotiationState.AWAITING_LOCAL_ANSWER
            try:
                await self._apply_remote_description(offer)
                remote = self.pc.remoteDescription
                if remote is None or remote.type != "offer":
                    raise NegotiationError(
                        "Remote offer was not applied", self.peer_id
                    )
                await self._flush_candidates()
                await self.pc.setLocalDescription(await self.pc.createAnswer())
            except NegotiationError:
                self._sync_state()
                raise
            except Exception as e:
                self._sync_state()
                raise NegotiationError(f"Failed to answer offer: {e}", self.peer_id) from e

            self._sync_state()
            logger.debug(f"[PEER {self.peer_id}] Local answer created")
            answer = self.pc.localDescription

        self._service_pending()
        return answer

    async def accept_answer(self, answer: RTCSessionDescription) -> None:
        """Apply the remote answer to our outstanding offer.

        Raises:
            NegotiationError: If no offer is outstanding or the answer cannot
                be applied.
        """
        async with self._negotiation_lock:
            if self.closed:
                raise LinkClosedError(f"Peer link {self.peer_id} is closed", self.peer_id)
            if answer.type not in ("answer", "pranswer"):
                raise NegotiationError(
                    f"Expected an answer, got {answer.type!r}", self.peer_id
                )
            if self.negotiation_state != NegotiationState.AWAITING_REMOTE_ANSWER:
                raise NegotiationError(
                    f"Received an answer in state {self.negotiation_state.value}",
                    self.peer_id,
                )

            try:
                await self._apply_remote_description(answer)
                await self._flush_candidates()
            except Exception as e:
                self._sync_state()
                raise NegotiationError(f"Failed to apply answer: {e}", self.peer_id) from e

            self._sync_state()
            logger.debug(f"[PEER {self.peer_id}] Remote answer applied")

        self._service_pending()

    async def _apply_remote_description(self, description: RTCSessionDescription) -> None:
        # Track events fire while the description is applied, so the msid
        # map has to be in place first.
        self._remote_msids = parse_msids(description.sdp)
        await self.pc.setRemoteDescription(description)

    # ===== Renegotiation over the control channel =====

    def _negotiation_needed(self) -> None:
        if self.closed:
            return
        self._renegotiation_needed = True
        if self.ready_to_negotiate and self.negotiation_state == NegotiationState.STABLE:
            self._spawn(self._renegotiate())
            return

        if self.negotiation_state == NegotiationState.STABLE:
            self.negotiation_state = NegotiationState.RENEGOTIATION_PENDING
        logger.debug(
            f"[PEER {self.peer_id}] Renegotiation deferred "
            f"(ready={self.ready_to_negotiate}, state={self.negotiation_state.value})"
        )

    def _service_pending(self) -> None:
        if self.closed or not self._renegotiation_needed or not self.ready_to_negotiate:
            return
        if self.negotiation_state in (
            NegotiationState.STABLE,
            NegotiationState.RENEGOTIATION_PENDING,
        ):
            self._spawn(self._renegotiate())

    async def _renegotiate(self) -> None:
        async with self._negotiation_lock:
            if self.closed or not self._renegotiation_needed or not self.ready_to_negotiate:
                return
            if self.negotiation_state not in (
                NegotiationState.STABLE,
                NegotiationState.RENEGOTIATION_PENDING,
            ):
                return

            self._renegotiation_needed = False
            logger.info(f"[PEER {self.peer_id}] Renegotiating over control channel")
            try:
                offer = await self._create_offer()
                self.control_channel.send_sdp_offer(offer)
            except (NegotiationError, ControlChannelError) as e:
                self._sync_state()
                self._report(e)

    async def _on_control_offer(self, offer: RTCSessionDescription) -> None:
        logger.info(f"[PEER {self.peer_id}] Renegotiation offer received")
        try:
            answer = await self.accept_offer(offer)
            self.control_channel.send_sdp_answer(answer)
        except (NegotiationError, ControlChannelError, LinkClosedError) as e:
            self._report(e)

    async def _on_control_answer(self, answer: RTCSessionDescription) -> None:
        logger.info(f"[PEER {self.peer_id}] Renegotiation answer received")
        try:
            await self.accept_answer(answer)
        except (NegotiationError, LinkClosedError) as e:
            self._report(e)

    # ===== ICE =====

    async def add_ice_candidate(
        self, candidate: Union[RTCIceCandidate, dict, None]
    ) -> None:
        """Apply a remote ICE candidate.

        Candidates arriving before a remote description exists are buffered
        and applied, in order, once it is set.

        Args:
            candidate: An RTCIceCandidate, its browser JSON form, or None /
                an empty candidate for end-of-candidates.

        Raises:
            NegotiationError: If the candidate is malformed or rejected.
        """
        if isinstance(candidate, dict):
            try:
                candidate = candidate_from_dict(candidate)
            except ValueError as e:
                raise NegotiationError(str(e), self.peer_id) from e
        if candidate is None or self.closed:
            return

        if self.pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
            logger.debug(
                f"[PEER {self.peer_id}] Buffered ICE candidate "
                f"({len(self._pending_candidates)} pending)"
            )
            return

        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            raise NegotiationError(f"Failed to add ICE candidate: {e}", self.peer_id) from e

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug(f"[PEER {self.peer_id}] Applying {len(pending)} buffered ICE candidate(s)")
        for candidate in pending:
            try:
                await self.pc.addIceCandidate(candidate)
            except Exception as e:
                self._report(
                    NegotiationError(f"Failed to add buffered ICE candidate: {e}", self.peer_id)
                )

    def _on_icecandidate(self, event) -> None:
        candidate = getattr(event, "candidate", event)
        if candidate is None:
            logger.debug(f"[PEER {self.peer_id}] No more local ICE candidates")
            return
        dispatch(self._send_ice_candidate, candidate, self.peer_id)

    # ===== Streams and data channels =====

    def add_stream(self, stream: MediaStream, label: str) -> None:
        """Send every track of ``stream`` to the remote peer under ``label``.

        Re-using a label replaces the previous mapping. Triggers
        renegotiation once the control channel is ready.
        """
        if self.closed:
            raise LinkClosedError(f"Peer link {self.peer_id} is closed", self.peer_id)
        previous = self.local_streams.get(label)
        if previous is not None:
            logger.warning(f"[PEER {self.peer_id}] Replacing stream with label {label!r}")
            # Its senders stay on the connection; the tracks end with the link.
            if previous is not stream:
                self._retired_streams.append(previous)

        logger.debug(f"[PEER {self.peer_id}] Adding stream {label} {stream}")
        self.local_streams[label] = stream
        sent_tracks = [sender.track for sender in self.pc.getSenders()]
        for track in stream.get_tracks():
            if any(track is sent for sent in sent_tracks):
                continue
            sender = self.pc.addTrack(track)
            tag_sender(sender, stream.id)

        dispatch(self.callbacks.on_local_stream_added, stream)
        self._negotiation_needed()

    def create_data_channel(self, label: str) -> RTCDataChannel:
        """Open an application data channel.

        ``on_local_data_channel_opened`` fires with the new channel right
        away; it opens once the connection carries it.

        Raises:
            ReservedLabelError: If ``label`` is ``"metadata"``.
        """
        if label == METADATA_LABEL:
            raise ReservedLabelError(f"Data channel label {label!r} is reserved")
        if self.closed:
            raise LinkClosedError(f"Peer link {self.peer_id} is closed", self.peer_id)

        channel = self.pc.createDataChannel(label)
        self.data_channels[label] = channel
        logger.debug(f"[PEER {self.peer_id}] Created data channel {label}")

        dispatch(self.callbacks.on_local_data_channel_opened, channel)
        self._negotiation_needed()
        return channel

    def _on_track(self, track) -> None:
        stream_id = resolve_stream_id(self.pc, track, self._remote_msids)
        stream = self.remote_streams.get(stream_id)
        if stream is not None:
            stream.add_track(track)
            logger.debug(f"[PEER {self.peer_id}] Merged {track.kind} track into stream {stream_id}")
            return

        stream = MediaStream([track], stream_id=stream_id)
        self.remote_streams[stream_id] = stream
        logger.info(f"[PEER {self.peer_id}] Remote stream added: {stream}")
        dispatch(self.callbacks.on_remote_stream_added, stream)

    def _on_datachannel(self, channel: RTCDataChannel) -> None:
        if channel.label == METADATA_LABEL:
            if self.control_channel is not None:
                logger.warning(f"[PEER {self.peer_id}] Ignoring duplicate metadata channel")
                return
            self._bind_control_channel(channel)
            return

        self.data_channels[channel.label] = channel
        self._remote_channel_labels.add(channel.label)
        logger.info(f"[PEER {self.peer_id}] Remote data channel opened: {channel.label}")
        dispatch(self.callbacks.on_remote_data_channel_opened, channel)

    def _on_connection_state_change(self) -> None:
        state = self.pc.connectionState
        logger.info(f"[PEER {self.peer_id}] Connection state is now {state}")
        if state in ("closed", "failed") and not self.closed:
            self._spawn(self.close())

    # ===== Teardown =====

    async def close(self) -> None:
        """Close the link. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self._closed_event.set()

        if self._renegotiation_needed:
            self._renegotiation_needed = False
            self._report(
                LinkClosedError(
                    f"Peer link {self.peer_id} closed with a renegotiation pending",
                    self.peer_id,
                )
            )

        for channel in self.data_channels.values():
            if channel.readyState not in ("closing", "closed"):
                channel.close()
        for stream in self.local_streams.values():
            stream.stop()
        for stream in self._retired_streams:
            stream.stop()
        self._retired_streams.clear()
        for stream in self.remote_streams.values():
            stream.stop()
        if self.control_channel is not None:
            self.control_channel.close()
        self._pending_candidates.clear()

        await self.pc.close()
        self.negotiation_state = NegotiationState.STABLE

        logger.info(f"[PEER {self.peer_id}] Peer link closed")
        dispatch(self._on_close, self)
        dispatch(self.callbacks.on_closed, self)
