"""Shared value types for raas-rtc.

Roles, lifecycle states and ICE server descriptors used by the signaling
session and the peer links it produces.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from aiortc import RTCIceServer

# Peer id used when the remote side is inherently singular (the lab host).
MASTER_PEER_ID = "master"

# Peer id used by the Answerer when an offer carries no sender.
UNKNOWN_PEER_ID = "remote"

# Label of the data channel reserved for the in-band control protocol.
METADATA_LABEL = "metadata"


class Role(str, Enum):
    """Local role of a signaling session."""

    OFFERER = "offerer"
    ANSWERER = "answerer"

    @property
    def log_prefix(self) -> str:
        return f"[{self.name}]"


class SessionState(str, Enum):
    """Lifecycle of a signaling session. CLOSED is terminal."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class NegotiationState(str, Enum):
    """Offer/answer state of a single peer link."""

    STABLE = "stable"
    AWAITING_LOCAL_ANSWER = "awaiting_local_answer"
    AWAITING_REMOTE_ANSWER = "awaiting_remote_answer"
    RENEGOTIATION_PENDING = "renegotiation_pending"


@dataclass
class IceServer:
    """STUN/TURN server descriptor.

    Attributes:
        urls: One URL or a list of URLs (``stun:`` / ``turn:`` / ``turns:``).
        username: Optional TURN username.
        credential: Optional TURN credential.
    """

    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")

    @classmethod
    def from_dict(cls, data: dict) -> "IceServer":
        """Create an IceServer from a ``{urls, username?, credential?}`` dict.

        ``uris`` and ``password`` are accepted as aliases, matching the
        field names some rendezvous providers return.
        """
        urls = data.get("urls") or data.get("uris")
        return cls(
            urls=urls,
            username=data.get("username"),
            credential=data.get("credential", data.get("password")),
        )

    def to_rtc(self) -> RTCIceServer:
        return RTCIceServer(
            urls=self.urls, username=self.username, credential=self.credential
        )

    def to_dict(self) -> dict:
        data = {"urls": self.urls}
        if self.username is not None:
            data["username"] = self.username
        if self.credential is not None:
            data["credential"] = self.credential
        return data
