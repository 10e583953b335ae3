"""
Geo-IP Providers

The geographic rules ask a provider two questions about an IP: is it a
VPN/proxy exit, and which country is it in. Real deployments plug in a
geo-IP service; the default provider only knows a static prefix table
and cannot resolve countries.
"""

import re
from abc import ABC, abstractmethod
from typing import Optional


class GeoIpProvider(ABC):
    """Capability the geographic rules depend on."""

    @abstractmethod
    async def is_vpn_or_proxy(self, ip: str) -> bool:
        """Return True if the address is a known VPN/proxy exit."""

    async def country_of(self, ip: str) -> Optional[str]:
        """ISO country code of the address, or None if unknown."""
        return None


DEFAULT_VPN_PATTERNS = (
    r"^10\.",
    r"^172\.16\.",
    r"^192\.168\.",
    r"^185\.",
    r"^46\.",
    r"^5\.",
)


class StaticPatternGeoIpProvider(GeoIpProvider):
    """
    Prefix-table provider.

    Default table: private ranges (10., 172.16., 192.168.) and ranges
    common among commercial VPN exits (185., 46., 5.).
    """

    def __init__(
        self,
        patterns: tuple[str, ...] = DEFAULT_VPN_PATTERNS,
        countries: Optional[dict[str, str]] = None,
    ):
        """
        Args:
            patterns: Regexes matched against the address
            countries: Optional prefix -> ISO country code table
        """
        self._patterns = [re.compile(p) for p in patterns]
        self._countries = countries or {}

    async def is_vpn_or_proxy(self, ip: str) -> bool:
        return any(p.match(ip) for p in self._patterns)

    async def country_of(self, ip: str) -> Optional[str]:
        for prefix, country in self._countries.items():
            if ip.startswith(prefix):
                return country
        return None
