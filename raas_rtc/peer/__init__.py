"""Peer side of raas-rtc.

This module provides:
- link: PeerLink, one peer connection and its renegotiation state machine
- control_channel: the in-band ``metadata`` channel carrying renegotiation
- media: MediaStream grouping and SDP msid helpers
"""

from raas_rtc.peer.control_channel import ControlChannel
from raas_rtc.peer.link import PeerLink
from raas_rtc.peer.media import MediaStream, parse_msids, resolve_stream_id, tag_sender

__all__ = [
    "PeerLink",
    "ControlChannel",
    # Media
    "MediaStream",
    "parse_msids",
    "resolve_stream_id",
    "tag_sender",
]
