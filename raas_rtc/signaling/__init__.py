"""Signaling side of raas-rtc.

This module provides:
- session: SignalingSession with Offerer/Answerer strategies and factories
- rendezvous: RendezvousChannel interface and the WebSocket relay adapter
- ice_servers: ICE server providers and peer connection construction
"""

from raas_rtc.signaling.ice_servers import (
    HttpIceServerProvider,
    IceServerProvider,
    StaticIceServerProvider,
    build_configuration,
    create_peer_connection,
)
from raas_rtc.signaling.rendezvous import (
    RendezvousChannel,
    RendezvousHandlers,
    WebSocketRendezvousChannel,
)
from raas_rtc.signaling.session import (
    AnswererStrategy,
    NegotiationStrategy,
    OffererStrategy,
    SignalingSession,
    create_answerer_session,
    create_offerer_session,
)

__all__ = [
    # Session
    "SignalingSession",
    "NegotiationStrategy",
    "OffererStrategy",
    "AnswererStrategy",
    "create_offerer_session",
    "create_answerer_session",
    # Rendezvous
    "RendezvousChannel",
    "RendezvousHandlers",
    "WebSocketRendezvousChannel",
    # ICE servers
    "IceServerProvider",
    "StaticIceServerProvider",
    "HttpIceServerProvider",
    "build_configuration",
    "create_peer_connection",
]
