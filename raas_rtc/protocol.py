"""Message protocol definitions for raas-rtc.

This module defines the wire format of the in-band control channel and the
JSON shapes used to carry session descriptions and ICE candidates over both
the control channel and the rendezvous channel.

Why an in-band control channel
------------------------------

The rendezvous service brokers exactly one offer and one answer per peer.
Anything added to a peer connection afterwards (a camera stream, a new data
channel) needs a fresh offer/answer round, so both peers open a data channel
labelled ``metadata`` during the initial handshake and carry every later
offer/answer over it.

Message Types
-------------

Every message is a single JSON object (no embedded newlines) tagged by
``type``.

**test**
    Sent by: Both peers, as soon as the metadata channel is open
    Purpose: Liveness probe. Receiving the remote probe marks the local
    control channel ready; readiness is independent per direction.
    Format: ``{"type": "test", "message": "helloworld"}``

**sdpOffer**
    Sent by: The peer that needs to renegotiate
    Purpose: Carries a renegotiation offer
    Format: ``{"type": "sdpOffer", "sdpOffer": {"type": "offer", "sdp": "..."}}``

**sdpAnswer**
    Sent by: The peer that received ``sdpOffer``
    Purpose: Carries the matching answer
    Format: ``{"type": "sdpAnswer", "sdpAnswer": {"type": "answer", "sdp": "..."}}``

Unknown ``type`` values are logged and ignored by the receiver so newer peers
can add message types without breaking older ones.

Message Flow Example
--------------------

1. Offerer ↔ Answerer: initial offer/answer via the rendezvous channel
2. Offerer → Answerer: ``test`` (metadata channel open)
3. Answerer → Offerer: ``test``
4. Offerer adds a stream
5. Offerer → Answerer: ``sdpOffer``
6. Answerer → Offerer: ``sdpAnswer``
"""

import json
from typing import Any, Optional, Tuple, Union

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

# Control channel message types
MSG_TEST = "test"
MSG_SDP_OFFER = "sdpOffer"
MSG_SDP_ANSWER = "sdpAnswer"

# Payload of the liveness probe
PROBE_MESSAGE = "helloworld"

# Session description types accepted on the wire
SDP_TYPES = {"offer", "answer", "pranswer", "rollback"}

CANDIDATE_PREFIX = "candidate:"


def format_message(msg_type: str, payload: Any = None) -> str:
    """Format a control channel message.

    The payload is stored under the key named after the message type, except
    for the probe which uses ``message``.

    Args:
        msg_type: One of the ``MSG_*`` constants.
        payload: JSON-serialisable payload.

    Returns:
        The encoded message text.

    Examples:
        >>> format_message(MSG_TEST, PROBE_MESSAGE)
        '{"type": "test", "message": "helloworld"}'
    """
    message = {"type": msg_type}
    if msg_type == MSG_TEST:
        message["message"] = payload
    elif payload is not None:
        message[msg_type] = payload
    return json.dumps(message)


def parse_message(message: Union[str, bytes]) -> Tuple[Optional[str], Any]:
    """Parse a control channel message into its type and payload.

    Args:
        message: Raw message text (bytes are decoded as UTF-8).

    Returns:
        Tuple of (message_type, payload). Unknown types are returned as-is
        with a None payload.

    Raises:
        ValueError: If the message is not a JSON object.
    """
    if isinstance(message, bytes):
        message = message.decode("utf-8")
    data = json.loads(message)
    if not isinstance(data, dict):
        raise ValueError(f"Control message must be a JSON object, got {type(data).__name__}")

    msg_type = data.get("type")
    if msg_type == MSG_TEST:
        return msg_type, data.get("message")
    return msg_type, data.get(msg_type)


def description_to_dict(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: Any) -> RTCSessionDescription:
    """Build an RTCSessionDescription from its JSON form.

    Raises:
        ValueError: If the payload is not a ``{type, sdp}`` object.
    """
    if not isinstance(data, dict):
        raise ValueError("Session description must be an object")
    sdp_type = data.get("type")
    sdp = data.get("sdp")
    if sdp_type not in SDP_TYPES:
        raise ValueError(f"Invalid session description type: {sdp_type!r}")
    if not isinstance(sdp, str):
        raise ValueError("Session description is missing its sdp")
    return RTCSessionDescription(sdp=sdp, type=sdp_type)


def candidate_to_dict(candidate: RTCIceCandidate) -> dict:
    """Serialise a candidate in the browser ``RTCIceCandidateInit`` shape."""
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Any) -> Optional[RTCIceCandidate]:
    """Parse a browser-style candidate.

    Returns:
        The candidate, or None for an end-of-candidates marker (empty
        candidate string).

    Raises:
        ValueError: If the candidate cannot be parsed.
    """
    if not isinstance(data, dict):
        raise ValueError("ICE candidate must be an object")
    candidate_str = data.get("candidate")
    if not candidate_str:
        return None
    if candidate_str.startswith(CANDIDATE_PREFIX):
        candidate_str = candidate_str[len(CANDIDATE_PREFIX):]
    # foundation component protocol priority ip port "typ" type
    if len(candidate_str.split()) < 8:
        raise ValueError(f"Malformed ICE candidate: {candidate_str!r}")
    try:
        candidate = candidate_from_sdp(candidate_str)
    except (IndexError, ValueError) as e:
        raise ValueError(f"Malformed ICE candidate: {e}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate
