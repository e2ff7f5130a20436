"""Typed provisioning operations on top of the panel session client."""

import json
import asyncio
import logging
from typing import Dict
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

import httpx

from ..exceptions import ProvisioningError
from .models import CLIENT_FLOW, ClientSettings, ClientUsage, ConnectionDescriptor
from .session import PanelSessionClient

logger = logging.getLogger(__name__)

INBOUNDS_API = "/panel/api/inbounds"

# Characters encodeURIComponent leaves alone, kept for label compatibility
_LABEL_SAFE = "-_.!~*'()"


class PanelAdapter:
    """Provisioning operations for access clients on remote panels."""

    def __init__(self, session_client: PanelSessionClient):
        self.session_client = session_client

    @property
    def endpoint_codes(self):
        return list(self.session_client.endpoints)

    async def add_client(
        self,
        endpoint_code: str,
        client_id: str,
        display_name: str,
        device_limit: int,
        traffic_quota_bytes: int,
        expiry_epoch_ms: int,
    ) -> None:
        """Create an access client on the endpoint's inbound.

        A duplicate ``client_id`` is rejected by the panel and surfaces as
        :class:`RemoteRejection`. ``expiry_epoch_ms=0`` never expires.
        """
        endpoint = self.session_client.endpoint(endpoint_code)
        settings = ClientSettings(
            id=client_id,
            email=display_name,
            limitIp=device_limit,
            totalGB=traffic_quota_bytes,
            expiryTime=expiry_epoch_ms,
        )

        await self.session_client.call(endpoint_code, "POST", f"{INBOUNDS_API}/addClient", {
            "id": endpoint.inbound_id,
            "settings": json.dumps({"clients": [settings.model_dump()]}),
        })

        logger.info(f"Client {display_name} ({client_id}) added on {endpoint_code}")

    async def remove_client(self, endpoint_code: str, client_id: str) -> None:
        endpoint = self.session_client.endpoint(endpoint_code)
        await self.session_client.call(
            endpoint_code,
            "POST",
            f"{INBOUNDS_API}/{endpoint.inbound_id}/delClient/{client_id}",
        )
        logger.info(f"Client {client_id} removed from {endpoint_code}")

    async def get_client_usage(self, endpoint_code: str, display_name: str) -> ClientUsage:
        """Read traffic counters. A missing record reads as zero usage."""
        obj = await self.session_client.call(
            endpoint_code,
            "GET",
            f"{INBOUNDS_API}/getClientTraffics/{quote(display_name, safe='')}",
        )
        if not obj:
            return ClientUsage()

        up = int(obj.get("up") or 0)
        down = int(obj.get("down") or 0)
        return ClientUsage(uploaded=up, downloaded=down, total=up + down)

    async def reset_client_usage(self, endpoint_code: str, display_name: str) -> None:
        endpoint = self.session_client.endpoint(endpoint_code)
        await self.session_client.call(
            endpoint_code,
            "POST",
            f"{INBOUNDS_API}/{endpoint.inbound_id}/resetClientTraffic/{quote(display_name, safe='')}",
        )
        logger.info(f"Traffic reset for {display_name} on {endpoint_code}")

    def build_connection_descriptor(self, endpoint_code: str, client_id: str, label: str) -> str:
        """Build the ``vless://`` URI a client app imports. No network I/O."""
        endpoint = self.session_client.endpoint(endpoint_code)
        params = urlencode({
            "type": "tcp",
            "security": "reality",
            "pbk": endpoint.public_key,
            "fp": "chrome",
            "sni": endpoint.sni,
            "sid": endpoint.short_id,
            "flow": CLIENT_FLOW,
        })
        return (
            f"vless://{client_id}@{endpoint.server_ip}:{endpoint.server_port}"
            f"?{params}#{quote(label, safe=_LABEL_SAFE)}"
        )

    async def health_check(self, endpoint_code: str) -> bool:
        """Probe the panel root. Never raises.

        A 2xx or a redirect (to the login page) means the panel is alive.
        A single attempt keeps a dead endpoint bounded by one timeout.
        """
        try:
            endpoint = self.session_client.endpoint(endpoint_code)
            response = await self.session_client.send(endpoint, "GET", f"{endpoint.panel_url}/", attempts=1)
        except (ProvisioningError, httpx.HTTPError) as e:
            logger.warning(f"Health check failed for {endpoint_code}: {e}")
            return False
        return response.is_success or response.is_redirect

    async def health_check_all(self) -> Dict[str, bool]:
        """Probe every endpoint concurrently."""
        codes = self.endpoint_codes
        results = await asyncio.gather(*(self.health_check(code) for code in codes))
        return dict(zip(codes, results))


def parse_connection_descriptor(uri: str) -> ConnectionDescriptor:
    """Parse a ``vless://`` URI produced by :meth:`PanelAdapter.build_connection_descriptor`.

    Raises:
        ValueError: If the URI is not a vless URI.
    """
    parts = urlsplit(uri)
    if parts.scheme != "vless" or not parts.username or not parts.hostname:
        raise ValueError(f"Not a vless URI: {uri}")

    query = {k: v[0] for k, v in parse_qs(parts.query).items()}
    return ConnectionDescriptor(
        client_id=parts.username,
        address=parts.hostname,
        port=parts.port or 443,
        network=query.get("type", "tcp"),
        security=query.get("security", "reality"),
        public_key=query.get("pbk", ""),
        fingerprint=query.get("fp", "chrome"),
        sni=query.get("sni", ""),
        short_id=query.get("sid", ""),
        flow=query.get("flow", CLIENT_FLOW),
        label=unquote(parts.fragment),
    )
