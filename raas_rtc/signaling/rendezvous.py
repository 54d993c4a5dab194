"""Rendezvous (signaling) channel boundary.

The rendezvous service only bootstraps a connection: it carries the first
offer, the first answer and trickled ICE candidates. ``RendezvousChannel`` is
the interface a SignalingSession consumes; ``WebSocketRendezvousChannel`` is
an adapter for a JSON-over-WebSocket relay.

Relay message shapes
--------------------

Client → relay, once after connecting::

    {"type": "register", "peer_id": "<client id>", "channel": "<name>", "role": "offerer"}

Either direction::

    {"type": "offer",     "sender": ..., "target": ..., "sdp": "...", "correlation_id": ...}
    {"type": "answer",    "sender": ..., "target": ..., "sdp": "...", "correlation_id": ...}
    {"type": "candidate", "sender": ..., "target": ..., "candidate": {"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}}

Relay → client::

    {"type": "error",  "message": "..."}
    {"type": "status", ...}
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websockets
from aiortc import RTCIceCandidate, RTCSessionDescription
from loguru import logger

from raas_rtc.events import invoke
from raas_rtc.exceptions import NegotiationError, SignalingError
from raas_rtc.protocol import (
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
)
from raas_rtc.types import Role


@dataclass
class RendezvousHandlers:
    """Handlers a RendezvousChannel invokes, in message order."""

    on_open: Optional[Callable[[], Any]] = None
    on_close: Optional[Callable[[], Any]] = None
    on_error: Optional[Callable[[Exception], Any]] = None
    on_status: Optional[Callable[[dict], Any]] = None
    # (offer, sender_id, correlation_id)
    on_sdp_offer: Optional[Callable[[RTCSessionDescription, Optional[str], Optional[str]], Any]] = None
    # (answer, sender_id)
    on_sdp_answer: Optional[Callable[[RTCSessionDescription, Optional[str]], Any]] = None
    # (candidate, sender_id)
    on_ice_candidate: Optional[Callable[[RTCIceCandidate, Optional[str]], Any]] = None


class RendezvousChannel(ABC):
    """A bidirectional message channel to a named signaling service."""

    def __init__(self):
        self.handlers = RendezvousHandlers()

    def bind(self, handlers: RendezvousHandlers) -> None:
        """Replace the handlers receiving this channel's events."""
        self.handlers = handlers

    @abstractmethod
    async def open(self) -> None:
        """Connect to the service. Raises SignalingError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Disconnect. ``on_close`` is invoked once the channel is down."""

    @abstractmethod
    async def send_sdp_offer(
        self, offer: RTCSessionDescription, target: Optional[str] = None
    ) -> None:
        pass

    @abstractmethod
    async def send_sdp_answer(
        self,
        answer: RTCSessionDescription,
        target: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    async def send_ice_candidate(
        self, candidate: RTCIceCandidate, target: Optional[str] = None
    ) -> None:
        pass


class WebSocketRendezvousChannel(RendezvousChannel):
    """Rendezvous channel backed by a WebSocket relay.

    Args:
        url: WebSocket URL of the relay.
        channel_name: Name of the signaling channel to join.
        client_id: This endpoint's id on the channel.
        role: Local role, announced at registration.
        open_timeout: Seconds to wait for the WebSocket handshake.
    """

    def __init__(
        self,
        url: str,
        channel_name: str,
        client_id: str,
        role: Role,
        open_timeout: float = 10.0,
    ):
        super().__init__()
        self.url = url
        self.channel_name = channel_name
        self.client_id = client_id
        self.role = role
        self.open_timeout = open_timeout
        self.websocket = None
        self._reader_task: Optional[asyncio.Task] = None

    async def open(self) -> None:
        try:
            self.websocket = await websockets.connect(
                self.url, open_timeout=self.open_timeout
            )
            await self.websocket.send(
                json.dumps(
                    {
                        "type": "register",
                        "peer_id": self.client_id,
                        "channel": self.channel_name,
                        "role": self.role.value,
                    }
                )
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise SignalingError(f"Failed to open rendezvous channel {self.url}: {e}") from e

        logger.info(f"Connected to rendezvous {self.url} as {self.client_id}")
        self._reader_task = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        if self.websocket is not None:
            await self.websocket.close()

    async def _read_loop(self) -> None:
        """Deliver relay messages to the handlers one at a time.

        This is the ONLY method that reads from the websocket.
        """
        await invoke(self.handlers.on_open)
        try:
            async for message in self.websocket:
                await self._handle_message(message)
        except websockets.exceptions.ConnectionClosedError as e:
            await invoke(
                self.handlers.on_error,
                SignalingError(f"Rendezvous connection lost: {e}"),
            )
        finally:
            logger.info("Rendezvous connection closed")
            await invoke(self.handlers.on_close)

    async def _handle_message(self, message) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.error("Invalid JSON received from rendezvous")
            return
        if not isinstance(data, dict):
            logger.error(f"Unexpected rendezvous message: {data!r}")
            return

        msg_type = data.get("type")
        sender = data.get("sender")

        if msg_type in ("offer", "answer"):
            try:
                description = description_from_dict(
                    {"type": msg_type, "sdp": data.get("sdp")}
                )
            except ValueError as e:
                await invoke(
                    self.handlers.on_error,
                    NegotiationError(f"Malformed {msg_type} from {sender}: {e}", sender),
                )
                return
            if msg_type == "offer":
                await invoke(
                    self.handlers.on_sdp_offer,
                    description,
                    sender,
                    data.get("correlation_id"),
                )
            else:
                await invoke(self.handlers.on_sdp_answer, description, sender)

        elif msg_type == "candidate":
            try:
                candidate = candidate_from_dict(data.get("candidate"))
            except ValueError as e:
                logger.warning(f"Dropping malformed ICE candidate from {sender}: {e}")
                return
            if candidate is None:
                logger.debug(f"End of ICE candidates from {sender}")
                return
            await invoke(self.handlers.on_ice_candidate, candidate, sender)

        elif msg_type == "error":
            await invoke(
                self.handlers.on_error,
                SignalingError(data.get("message") or data.get("reason") or "Rendezvous error"),
            )

        elif msg_type == "status":
            await invoke(self.handlers.on_status, data)

        else:
            logger.debug(f"Unhandled rendezvous message type: {msg_type}")

    async def _send(self, payload: dict) -> None:
        if self.websocket is None:
            raise SignalingError("Rendezvous channel is not open")
        try:
            await self.websocket.send(json.dumps(payload))
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingError(f"Rendezvous channel closed: {e}") from e

    async def send_sdp_offer(
        self, offer: RTCSessionDescription, target: Optional[str] = None
    ) -> None:
        await self._send(
            {"type": offer.type, "sender": self.client_id, "target": target, "sdp": offer.sdp}
        )

    async def send_sdp_answer(
        self,
        answer: RTCSessionDescription,
        target: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        payload = {
            "type": answer.type,
            "sender": self.client_id,
            "target": target,
            "sdp": answer.sdp,
        }
        if correlation_id is not None:
            payload["correlation_id"] = correlation_id
        await self._send(payload)

    async def send_ice_candidate(
        self, candidate: RTCIceCandidate, target: Optional[str] = None
    ) -> None:
        await self._send(
            {
                "type": "candidate",
                "sender": self.client_id,
                "target": target,
                "candidate": candidate_to_dict(candidate),
            }
        )
