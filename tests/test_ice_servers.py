"""Tests for ICE server providers."""

from unittest import mock

import pytest
import requests

from raas_rtc.signaling.ice_servers import (
    HttpIceServerProvider,
    StaticIceServerProvider,
    build_configuration,
)
from raas_rtc.types import IceServer

ENDPOINT = "http://relay.test:8001/ice-servers"


def response(status_code=200, payload=None, text=""):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = payload
    return resp


class TestIceServer:
    """Tests for the IceServer descriptor."""

    def test_empty_urls_raises(self):
        """An IceServer needs at least one URL."""
        with pytest.raises(ValueError, match="urls cannot be empty"):
            IceServer(urls=[])

    def test_from_dict_aliases(self):
        """'uris' and 'password' are accepted."""
        server = IceServer.from_dict(
            {"uris": ["turn:a.example.org"], "username": "u", "password": "p"}
        )
        assert server.urls == ["turn:a.example.org"]
        assert server.credential == "p"
        assert server.to_dict() == {
            "urls": ["turn:a.example.org"],
            "username": "u",
            "credential": "p",
        }


class TestHttpIceServerProvider:
    """Tests for fetching TURN credentials over HTTP."""

    @pytest.mark.asyncio
    async def test_fetch(self):
        """Servers are parsed from the ice_servers list."""
        payload = {
            "ice_servers": [
                {"urls": "turn:turn.example.org:3478", "username": "u", "credential": "c"},
            ]
        }
        with mock.patch(
            "raas_rtc.signaling.ice_servers.requests.get", return_value=response(payload=payload)
        ) as get:
            servers = await HttpIceServerProvider(ENDPOINT).fetch_ice_servers("lab-1")

        get.assert_called_once_with(ENDPOINT, params={"channel": "lab-1"}, timeout=10.0)
        assert servers == [
            IceServer(urls="turn:turn.example.org:3478", username="u", credential="c")
        ]

    @pytest.mark.asyncio
    async def test_request_error_returns_empty(self):
        """Network errors fail closed."""
        with mock.patch(
            "raas_rtc.signaling.ice_servers.requests.get",
            side_effect=requests.ConnectionError("down"),
        ):
            assert await HttpIceServerProvider(ENDPOINT).fetch_ice_servers("lab-1") == []

    @pytest.mark.asyncio
    async def test_bad_status_returns_empty(self):
        """Non-200 responses fail closed."""
        with mock.patch(
            "raas_rtc.signaling.ice_servers.requests.get",
            return_value=response(status_code=403, text="forbidden"),
        ):
            assert await HttpIceServerProvider(ENDPOINT).fetch_ice_servers("lab-1") == []

    @pytest.mark.asyncio
    async def test_malformed_payload_returns_empty(self):
        """Entries without URLs fail closed."""
        with mock.patch(
            "raas_rtc.signaling.ice_servers.requests.get",
            return_value=response(payload={"ice_servers": [{"username": "u"}]}),
        ):
            assert await HttpIceServerProvider(ENDPOINT).fetch_ice_servers("lab-1") == []


class TestStaticProviderAndConfiguration:
    @pytest.mark.asyncio
    async def test_static_provider_returns_copy(self):
        """The static provider hands out a copy of its list."""
        server = IceServer(urls="stun:stun.example.org")
        provider = StaticIceServerProvider([server])
        servers = await provider.fetch_ice_servers("lab-1")
        servers.clear()
        assert provider.ice_servers == [server]

    def test_build_configuration(self):
        """Servers become RTCIceServer entries; none means no configuration."""
        assert build_configuration([]) is None

        configuration = build_configuration(
            [IceServer(urls="stun:stun.example.org"), IceServer(urls="turn:t", username="u", credential="c")]
        )
        assert [s.urls for s in configuration.iceServers] == ["stun:stun.example.org", "turn:t"]
        assert configuration.iceServers[1].username == "u"
