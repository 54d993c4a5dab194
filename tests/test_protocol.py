"""Tests for control channel message formatting and SDP/ICE helpers."""

import json

import pytest
from aiortc import RTCSessionDescription

from raas_rtc.protocol import (
    MSG_SDP_ANSWER,
    MSG_SDP_OFFER,
    MSG_TEST,
    PROBE_MESSAGE,
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
    description_to_dict,
    format_message,
    parse_message,
)


class TestFormatMessage:
    """Tests for format_message / parse_message."""

    def test_probe(self):
        """The probe carries its payload under 'message'."""
        assert json.loads(format_message(MSG_TEST, PROBE_MESSAGE)) == {
            "type": "test",
            "message": "helloworld",
        }

    def test_sdp_offer(self):
        """SDP payloads are keyed by the message type."""
        offer = RTCSessionDescription(sdp="v=0\r\n", type="offer")
        message = json.loads(format_message(MSG_SDP_OFFER, description_to_dict(offer)))
        assert message == {"type": "sdpOffer", "sdpOffer": {"type": "offer", "sdp": "v=0\r\n"}}

    def test_parse_probe(self):
        """parse_message returns the probe payload."""
        assert parse_message('{"type": "test", "message": "helloworld"}') == (
            MSG_TEST,
            PROBE_MESSAGE,
        )

    def test_parse_bytes(self):
        """Binary messages are decoded as UTF-8."""
        raw = b'{"type": "sdpAnswer", "sdpAnswer": {"type": "answer", "sdp": "x"}}'
        assert parse_message(raw) == (MSG_SDP_ANSWER, {"type": "answer", "sdp": "x"})

    def test_parse_unknown_type(self):
        """Unknown types come back with no payload."""
        assert parse_message('{"type": "later", "data": 1}') == ("later", None)

    def test_parse_non_object_raises(self):
        """Only JSON objects are valid messages."""
        with pytest.raises(ValueError):
            parse_message("[1, 2]")
        with pytest.raises(ValueError):
            parse_message("not json")


class TestDescriptions:
    """Tests for session description conversion."""

    def test_from_dict(self):
        """A valid {type, sdp} object becomes an RTCSessionDescription."""
        description = description_from_dict({"type": "answer", "sdp": "v=0\r\n"})
        assert description.type == "answer"
        assert description.sdp == "v=0\r\n"

    @pytest.mark.parametrize(
        "payload",
        [None, "offer", {"type": "bogus", "sdp": "v=0"}, {"type": "offer"}, {"type": "offer", "sdp": 5}],
    )
    def test_from_dict_invalid(self, payload):
        """Malformed descriptions raise ValueError."""
        with pytest.raises(ValueError):
            description_from_dict(payload)


class TestCandidates:
    """Tests for ICE candidate conversion."""

    def test_from_dict_strips_prefix(self):
        """Browser-style candidates with the 'candidate:' prefix are parsed."""
        candidate = candidate_from_dict(
            {
                "candidate": "candidate:842163049 1 udp 1677729535 198.51.100.4 49152 typ srflx raddr 10.0.0.2 rport 49152",
                "sdpMid": "1",
                "sdpMLineIndex": 1,
            }
        )
        assert candidate.foundation == "842163049"
        assert candidate.ip == "198.51.100.4"
        assert candidate.port == 49152
        assert candidate.type == "srflx"
        assert candidate.sdpMid == "1"
        assert candidate.sdpMLineIndex == 1

    def test_to_dict_adds_prefix(self):
        """Serialised candidates carry the prefix and media identifiers."""
        candidate = candidate_from_dict(
            {"candidate": "1 1 udp 2130706431 192.168.1.2 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
        )
        data = candidate_to_dict(candidate)
        assert data["candidate"].startswith("candidate:1 1 udp 2130706431 192.168.1.2 5000 typ host")
        assert data["sdpMid"] == "0"
        assert data["sdpMLineIndex"] == 0

    def test_empty_candidate_is_end_marker(self):
        """An empty candidate string means end-of-candidates."""
        assert candidate_from_dict({"candidate": "", "sdpMid": "0"}) is None

    @pytest.mark.parametrize("payload", [None, {"candidate": "candidate:1 1 udp"}, {"candidate": "a b c d e f g h"}])
    def test_malformed_candidate(self, payload):
        """Malformed candidates raise ValueError."""
        with pytest.raises(ValueError):
            candidate_from_dict(payload)
