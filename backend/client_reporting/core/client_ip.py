"""Client IP detection behind reverse proxies.

X-Forwarded-For is only honoured when the direct peer is listed in
TRUSTED_PROXY_IPS; otherwise a caller could pick its own rate-limit bucket
by sending the header.
"""

import ipaddress
import logging
from functools import lru_cache

from fastapi import Request

from client_reporting.core.config import settings

logger = logging.getLogger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@lru_cache(maxsize=1)
def _trusted_proxy_networks() -> tuple[IPNetwork, ...]:
    """Parse TRUSTED_PROXY_IPS (IPs or CIDRs, comma-separated)."""
    networks: list[IPNetwork] = []
    for entry in settings.TRUSTED_PROXY_IPS.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            # A bare address becomes a /32 or /128 network
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid trusted proxy IP/network '{entry}': {e}")
    return tuple(networks)


def _is_trusted_proxy(ip_str: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in _trusted_proxy_networks())


def _valid_ip(ip_str: str) -> bool:
    try:
        ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return True


def get_client_ip(request: Request) -> str:
    """Return the caller's IP address, or "unknown".

    When the direct peer is a trusted proxy, X-Forwarded-For is walked right
    to left and the first address that is not itself a trusted proxy wins.
    """
    direct_ip = request.client.host if request.client else None
    if not direct_ip:
        return "unknown"

    if not _is_trusted_proxy(direct_ip):
        return direct_ip

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not _valid_ip(hop):
                logger.warning(f"Invalid IP in X-Forwarded-For: {hop}")
                continue
            if not _is_trusted_proxy(hop):
                return hop
        # Every hop is a proxy; the leftmost is the best remaining guess
        if hops and _valid_ip(hops[0]):
            return hops[0]

    real_ip = (request.headers.get("X-Real-IP") or "").strip()
    if real_ip and _valid_ip(real_ip):
        return real_ip

    return direct_ip


def clear_trusted_proxy_cache() -> None:
    """Forget parsed TRUSTED_PROXY_IPS (tests change it at runtime)."""
    _trusted_proxy_networks.cache_clear()
