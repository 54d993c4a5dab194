"""Exceptions raised by raas-rtc."""


class RTCBridgeError(Exception):
    """Base class for all raas-rtc errors."""


class SignalingError(RTCBridgeError):
    """The rendezvous channel could not be opened, failed, or was closed.

    Fatal for the session instance that raised it.
    """


class NegotiationError(RTCBridgeError):
    """A session description or ICE candidate was malformed or out of order.

    The affected peer link is left open so the caller can decide whether to
    close it.
    """

    def __init__(self, message: str, peer_id: str = None):
        super().__init__(message)
        self.peer_id = peer_id


class ControlChannelError(RTCBridgeError):
    """The in-band control channel was used before it was open."""


class ReservedLabelError(RTCBridgeError, ValueError):
    """A caller tried to use a data channel label reserved for internal use."""


class LinkClosedError(RTCBridgeError):
    """A peer link closed while a renegotiation or readiness wait was pending."""

    def __init__(self, message: str, peer_id: str = None):
        super().__init__(message)
        self.peer_id = peer_id
