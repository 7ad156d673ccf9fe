"""Public IP resolution through an external lookup service."""
import asyncio
import logging
import time
from typing import Optional

import httpx
from prometheus_client import Counter

from .config import settings

logger = logging.getLogger(__name__)

FALLBACK_PREFIX = "browser_"

ip_lookup_fallbacks = Counter(
    "ip_lookup_fallbacks_total",
    "Total number of IP lookups that fell back to a synthetic address",
    ["reason"]
)


def fallback_address() -> str:
    """Synthetic address used when the lookup service cannot answer."""
    return f"{FALLBACK_PREFIX}{int(time.time() * 1000)}"


class NetworkIdentityResolver:
    """Resolves the voter's public address, degrading to a synthetic value."""

    def __init__(
        self,
        lookup_url: str = settings.IP_LOOKUP_URL,
        timeout: float = settings.IP_LOOKUP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.lookup_url = lookup_url
        self.timeout = timeout
        self.transport = transport

    async def _lookup(self) -> str:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport
        ) as client:
            response = await client.get(self.lookup_url)
            response.raise_for_status()
            data = response.json()

        if not isinstance(data, dict):
            raise ValueError(f"Unexpected lookup payload: {data!r}")

        address = data.get("ip")
        if address is None or address == "":
            return "unknown"
        if not isinstance(address, str):
            raise ValueError(f"Unexpected ip value: {address!r}")
        return address

    async def resolve_client_address(self) -> str:
        """
        Resolve the public IP address.

        One round trip bounded by ``timeout`` seconds in total. Any timeout,
        non-success status or malformed payload yields ``fallback_address()``
        instead of an exception.

        Returns:
            str: Resolved address or synthetic fallback
        """
        try:
            return await asyncio.wait_for(self._lookup(), timeout=self.timeout)
        except asyncio.TimeoutError:
            ip_lookup_fallbacks.labels(reason="timeout").inc()
            logger.warning(f"IP lookup timed out after {self.timeout}s, using fallback")
        except httpx.HTTPError as e:
            ip_lookup_fallbacks.labels(reason="http_error").inc()
            logger.warning(f"Could not get IP address: {e}")
        except ValueError as e:
            ip_lookup_fallbacks.labels(reason="malformed").inc()
            logger.warning(f"Malformed IP lookup response: {e}")

        return fallback_address()
