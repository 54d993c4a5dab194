"""Media stream grouping.

aiortc deals in individual tracks; the remote side groups them into streams
through the ``a=msid:<stream id> <track id>`` attribute of each media
section. ``MediaStream`` restores that grouping on both ends.
"""

import uuid
from typing import Dict, Iterable, List, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCRtpSender
from aiortc.sdp import SessionDescription


class MediaStream:
    """A labelled group of media tracks sharing one stream id."""

    def __init__(
        self, tracks: Optional[Iterable[MediaStreamTrack]] = None, stream_id: str = None
    ):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = []
        for track in tracks or []:
            self.add_track(track)

    def __repr__(self) -> str:
        kinds = ",".join(track.kind for track in self._tracks)
        return f"MediaStream(id={self.id!r}, tracks=[{kinds}])"

    def add_track(self, track: MediaStreamTrack) -> bool:
        """Add a track unless one with the same id is already present.

        Returns:
            True if the track was added.
        """
        if self.get_track_by_id(track.id) is not None:
            return False
        self._tracks.append(track)
        return True

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_track_by_id(self, track_id: str) -> Optional[MediaStreamTrack]:
        for track in self._tracks:
            if track.id == track_id:
                return track
        return None

    def stop(self) -> None:
        """Stop every track; stopped tracks report ``readyState == "ended"``."""
        for track in self._tracks:
            track.stop()


def tag_sender(sender: RTCRtpSender, stream_id: str) -> None:
    """Make ``sender`` advertise ``stream_id`` in its msid.

    aiortc assigns each sender a random stream id, which would split a
    stream's audio and video into separate remote streams.
    """
    if hasattr(sender, "_stream_id"):
        sender._stream_id = stream_id


def parse_msids(sdp: str) -> Dict[str, str]:
    """Map media ids and track ids to their msid stream id.

    Args:
        sdp: Session description text.

    Returns:
        Dict keyed by both ``mid`` and track id, valued by stream id. Media
        sections without an msid are omitted.
    """
    mapping: Dict[str, str] = {}
    for media in SessionDescription.parse(sdp).media:
        if not media.msid:
            continue
        bits = media.msid.split()
        stream_id = bits[0]
        if media.rtp.muxId:
            mapping[media.rtp.muxId] = stream_id
        if len(bits) > 1:
            mapping[bits[1]] = stream_id
    return mapping


def resolve_stream_id(
    pc: RTCPeerConnection, track: MediaStreamTrack, msids: Dict[str, str]
) -> str:
    """Find the remote stream id carrying ``track``.

    Looks the track's transceiver mid up first, then the track id, and falls
    back to the track id itself when the remote sent no msid.
    """
    for transceiver in pc.getTransceivers():
        if transceiver.receiver.track is track and transceiver.mid in msids:
            return msids[transceiver.mid]
    return msids.get(track.id, track.id)
