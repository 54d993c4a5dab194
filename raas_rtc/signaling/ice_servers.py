"""ICE server discovery.

A provider returns the STUN/TURN descriptors to use for a signaling channel.
Providers fail closed: any error yields an empty list and the session falls
back to STUN only.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

import requests
from aiortc import RTCConfiguration, RTCPeerConnection
from loguru import logger

from raas_rtc.types import IceServer


class IceServerProvider(ABC):
    """Supplies ICE server descriptors for a channel."""

    @abstractmethod
    async def fetch_ice_servers(self, channel_name: str) -> List[IceServer]:
        """Return ICE servers for ``channel_name``; never raises."""


class StaticIceServerProvider(IceServerProvider):
    """Returns a fixed list of ICE servers."""

    def __init__(self, ice_servers: Optional[Iterable[IceServer]] = None):
        self.ice_servers = list(ice_servers or [])

    async def fetch_ice_servers(self, channel_name: str) -> List[IceServer]:
        return list(self.ice_servers)


class HttpIceServerProvider(IceServerProvider):
    """Fetches TURN credentials from the rendezvous service's HTTP API.

    Expects ``GET <endpoint>?channel=<name>`` to return
    ``{"ice_servers": [{"urls": ..., "username": ..., "credential": ...}]}``.
    """

    def __init__(self, endpoint: str, timeout: float = 10.0):
        self.endpoint = endpoint
        self.timeout = timeout

    def _get(self, channel_name: str) -> requests.Response:
        return requests.get(
            self.endpoint, params={"channel": channel_name}, timeout=self.timeout
        )

    async def fetch_ice_servers(self, channel_name: str) -> List[IceServer]:
        try:
            response = await asyncio.to_thread(self._get, channel_name)
        except requests.RequestException as e:
            logger.warning(f"Failed to fetch ICE servers for {channel_name}: {e}")
            return []

        if response.status_code != 200:
            logger.warning(
                f"ICE server request for {channel_name} failed "
                f"({response.status_code}): {response.text}"
            )
            return []

        try:
            entries = response.json().get("ice_servers", [])
            ice_servers = [IceServer.from_dict(entry) for entry in entries]
        except (ValueError, AttributeError, TypeError) as e:
            logger.warning(f"Malformed ICE server response for {channel_name}: {e}")
            return []

        logger.info(f"Received {len(ice_servers)} ICE server(s) for {channel_name}")
        return ice_servers


def build_configuration(ice_servers: List[IceServer]) -> Optional[RTCConfiguration]:
    """Build the RTCConfiguration for a list of ICE servers.

    Returns:
        The configuration, or None when there are no servers.
    """
    if not ice_servers:
        return None
    return RTCConfiguration(iceServers=[server.to_rtc() for server in ice_servers])


def create_peer_connection(ice_servers: List[IceServer]) -> RTCPeerConnection:
    """Create RTCPeerConnection with the given ICE servers.

    Returns:
        RTCPeerConnection configured with ICE servers.
    """
    configuration = build_configuration(ice_servers)
    if configuration is None:
        logger.warning("No ICE servers configured, using default RTCPeerConnection")
        return RTCPeerConnection()

    logger.info(f"Creating RTCPeerConnection with {len(ice_servers)} ICE server(s)")
    return RTCPeerConnection(configuration=configuration)
