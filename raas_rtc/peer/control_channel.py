"""In-band control channel carrying renegotiation offers and answers.

See ``raas_rtc.protocol`` for the wire format.
"""

import asyncio
from typing import Any, Callable, Optional

from aiortc import RTCDataChannel, RTCSessionDescription
from loguru import logger

from raas_rtc.events import dispatch
from raas_rtc.exceptions import ControlChannelError, NegotiationError
from raas_rtc.protocol import (
    MSG_SDP_ANSWER,
    MSG_SDP_OFFER,
    MSG_TEST,
    PROBE_MESSAGE,
    description_from_dict,
    description_to_dict,
    format_message,
    parse_message,
)


class ControlChannel:
    """Wraps the ``metadata`` data channel of a peer link.

    The probe is sent as soon as the underlying channel is open. The channel
    becomes ready, and ``on_ready`` fires, the first time the remote probe
    arrives.

    Attributes:
        channel: The underlying RTCDataChannel.
        ready: True once the remote probe has been received.
    """

    def __init__(
        self,
        channel: RTCDataChannel,
        on_sdp_offer: Callable[[RTCSessionDescription], Any],
        on_sdp_answer: Callable[[RTCSessionDescription], Any],
        on_ready: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        peer_id: str = None,
    ):
        self.channel = channel
        self.ready = False
        self.peer_id = peer_id
        self._on_sdp_offer = on_sdp_offer
        self._on_sdp_answer = on_sdp_answer
        self._on_ready = on_ready
        self._on_error = on_error
        self._ready_event = asyncio.Event()
        self._probe_sent = False

        channel.on("message", self._on_message)
        if channel.readyState == "open":
            self._send_probe()
        else:
            channel.on("open", self._send_probe)

        logger.debug(f"[METADATA] Control channel bound for peer {peer_id}")

    @property
    def is_open(self) -> bool:
        return self.channel.readyState == "open"

    async def wait_ready(self) -> None:
        await self._ready_event.wait()

    def _send(self, message: str) -> None:
        if not self.is_open:
            raise ControlChannelError(
                f"Control channel for peer {self.peer_id} is {self.channel.readyState}"
            )
        self.channel.send(message)

    def _send_probe(self) -> None:
        if self._probe_sent:
            return
        self._probe_sent = True
        self._send(format_message(MSG_TEST, PROBE_MESSAGE))
        logger.debug(f"[METADATA] Probe sent to peer {self.peer_id}")

    def send_sdp_offer(self, offer: RTCSessionDescription) -> None:
        self._send(format_message(MSG_SDP_OFFER, description_to_dict(offer)))

    def send_sdp_answer(self, answer: RTCSessionDescription) -> None:
        self._send(format_message(MSG_SDP_ANSWER, description_to_dict(answer)))

    def _mark_ready(self) -> None:
        if self.ready:
            return
        self.ready = True
        self._ready_event.set()
        logger.info(f"[METADATA] Control channel ready for peer {self.peer_id}")
        dispatch(self._on_ready)

    def _on_message(self, message) -> None:
        try:
            msg_type, payload = parse_message(message)
        except (ValueError, UnicodeDecodeError) as e:
            # json.JSONDecodeError is a ValueError
            logger.error(f"[METADATA] Undecodable message from peer {self.peer_id}: {e}")
            return

        if msg_type == MSG_TEST:
            logger.debug(f"[METADATA] Received probe: {payload}")
            self._mark_ready()

        elif msg_type in (MSG_SDP_OFFER, MSG_SDP_ANSWER):
            try:
                description = description_from_dict(payload)
            except ValueError as e:
                dispatch(
                    self._on_error,
                    NegotiationError(
                        f"Malformed {msg_type} from peer {self.peer_id}: {e}", self.peer_id
                    ),
                )
                return
            handler = self._on_sdp_offer if msg_type == MSG_SDP_OFFER else self._on_sdp_answer
            dispatch(handler, description)

        else:
            logger.warning(f"[METADATA] Ignoring unknown message type: {msg_type}")

    def close(self) -> None:
        if self.channel.readyState not in ("closing", "closed"):
            self.channel.close()
