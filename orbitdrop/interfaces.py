"""
Network Interface Enumeration

Local IPv4 addresses (advertised as TCP candidates) and per-interface
broadcast addresses (used by the LAN signaling bus), read from the
host's adapters with ifaddr.
"""

import ipaddress
import logging
from typing import List, Tuple

import ifaddr

logger = logging.getLogger(__name__)

GLOBAL_BROADCAST = '255.255.255.255'


def get_ipv4_interfaces() -> List[Tuple[str, str, int]]:
    """
    List IPv4 addresses of all adapters.

    Returns:
        (adapter name, address, prefix length) tuples
    """
    interfaces = []
    for adapter in ifaddr.get_adapters():
        for ip in adapter.ips:
            if ip.is_IPv4:
                interfaces.append((adapter.nice_name, ip.ip, ip.network_prefix))
    return interfaces


def get_local_addresses(host: str) -> List[str]:
    """Addresses a listener bound to `host` can be reached on, loopback last."""
    if host not in ('', '0.0.0.0'):
        return [host]

    addresses = []
    for _, address, _ in get_ipv4_interfaces():
        if not ipaddress.IPv4Address(address).is_loopback and address not in addresses:
            addresses.append(address)

    addresses.append('127.0.0.1')
    return addresses


def get_broadcast_addresses() -> List[str]:
    """Global broadcast plus the directed broadcast of every non-loopback subnet."""
    addresses = [GLOBAL_BROADCAST]

    for name, address, prefix in get_ipv4_interfaces():
        interface = ipaddress.IPv4Interface(f"{address}/{prefix}")
        if interface.is_loopback or interface.network.prefixlen >= 31:
            continue

        broadcast = str(interface.network.broadcast_address)
        if broadcast not in addresses:
            logger.debug(f"Broadcast address {broadcast} on {name}")
            addresses.append(broadcast)

    return addresses
