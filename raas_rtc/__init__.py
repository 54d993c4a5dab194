"""raas-rtc: WebRTC bridge between a lab host and remote users.

A rendezvous service carries the first offer/answer exchange; every later
renegotiation travels over the in-band ``metadata`` data channel.
"""

from raas_rtc.events import PeerLinkCallbacks, SessionCallbacks
from raas_rtc.exceptions import (
    ControlChannelError,
    LinkClosedError,
    NegotiationError,
    RTCBridgeError,
    ReservedLabelError,
    SignalingError,
)
from raas_rtc.peer import MediaStream, PeerLink
from raas_rtc.signaling import (
    SignalingSession,
    create_answerer_session,
    create_offerer_session,
)
from raas_rtc.types import IceServer, NegotiationState, Role, SessionState

__version__ = "0.1.0"

__all__ = [
    # Sessions
    "SignalingSession",
    "create_offerer_session",
    "create_answerer_session",
    "SessionCallbacks",
    # Peer links
    "PeerLink",
    "PeerLinkCallbacks",
    "MediaStream",
    # Types
    "IceServer",
    "NegotiationState",
    "Role",
    "SessionState",
    # Errors
    "RTCBridgeError",
    "SignalingError",
    "NegotiationError",
    "ControlChannelError",
    "ReservedLabelError",
    "LinkClosedError",
]
