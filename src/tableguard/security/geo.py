"""Geographic enrichment of source IP addresses.

No external lookup service is called. Addresses are classified with
:mod:`ipaddress` and matched against an operator-supplied CIDR map.
"""

import ipaddress
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


class GeoLookup(Protocol):
    def lookup(self, ip_address: str | None) -> dict[str, Any]: ...


class GeoLocator:
    """Resolve an IP address to a coarse location.

    Usage:
        geo = GeoLocator({"203.0.113.0/24": "NL"})
        geo.lookup("203.0.113.7")
        # {"ip": "203.0.113.7", "country": "NL", "network": "203.0.113.0/24", ...}
    """

    def __init__(self, networks: dict[str, str] | None = None):
        """Initialize locator.

        Args:
            networks: CIDR -> country code map
        """
        self._networks: list[tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, str]] = []
        for cidr, country in (networks or {}).items():
            try:
                self._networks.append((ipaddress.ip_network(cidr, strict=False), country))
            except ValueError:
                logger.warning("Ignoring invalid geo network %r", cidr)
        # Most specific network first
        self._networks.sort(key=lambda item: item[0].prefixlen, reverse=True)

    def lookup(self, ip_address: str | None) -> dict[str, Any]:
        """Classify an address.

        Returns:
            Dict with ``ip``, ``country``, ``network`` and ``scope``
            (``private``, ``loopback``, ``reserved``, ``public`` or ``invalid``)
        """
        info: dict[str, Any] = {
            "ip": ip_address,
            "country": UNKNOWN,
            "network": None,
            "scope": "invalid",
        }
        if not ip_address:
            return info

        try:
            address = ipaddress.ip_address(ip_address)
        except ValueError:
            return info

        if address.is_loopback:
            info["scope"] = "loopback"
        elif address.is_private:
            info["scope"] = "private"
        elif address.is_reserved or address.is_multicast or address.is_unspecified:
            info["scope"] = "reserved"
        else:
            info["scope"] = "public"

        for network, country in self._networks:
            if address.version == network.version and address in network:
                info["country"] = country
                info["network"] = str(network)
                break
        else:
            if info["scope"] in ("loopback", "private"):
                info["country"] = "local"

        return info
