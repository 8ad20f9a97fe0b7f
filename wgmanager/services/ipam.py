"""IP address management for tunnel subnets.

Pure functions only: callers pass in the set of addresses already taken and
get back the lowest free host address. Works for IPv4 and IPv6 alike since
``ipaddress`` addresses support integer arithmetic.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable

from wgmanager.services.errors import NoAvailableAddressError


def _parse_network(cidr: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    return ipaddress.ip_network(cidr.strip(), strict=False)


def split_interface_address(address: str) -> tuple[str, str]:
    """Split an interface address like ``10.8.0.1/24`` into ``(cidr, server_ip)``.

    Raises ValueError when the address is not valid CIDR notation.
    """
    if not address or "/" not in address:
        raise ValueError(f"invalid interface address: {address!r}")
    iface = ipaddress.ip_interface(address.strip())
    return str(iface.network), str(iface.ip)


def host_route(ip: str) -> str:
    """Single-host route for ``ip``: ``/32`` for IPv4, ``/128`` for IPv6."""
    addr = ipaddress.ip_address(ip.strip())
    return f"{addr}/{addr.max_prefixlen}"


def _normalize_used(used: Iterable[str]) -> set:
    result = set()
    for value in used:
        if not value:
            continue
        text = str(value).strip().split("/", 1)[0]
        try:
            result.add(ipaddress.ip_address(text))
        except ValueError:
            continue
    return result


def allocate_next_ip(cidr: str, used: Iterable[str], server_ip: str | None) -> str:
    """Return the lowest free host address in ``cidr``.

    Skips the network address, the IPv4 broadcast address (prefix < 31) and
    ``server_ip`` even when the caller leaves it out of ``used``. Deterministic
    for a given used-set; raises NoAvailableAddressError when the subnet is full.
    """
    network = _parse_network(cidr)
    taken = _normalize_used(used)
    reserved = {network.network_address}
    if network.version == 4 and network.prefixlen < 31:
        reserved.add(network.broadcast_address)
    if server_ip:
        reserved.add(ipaddress.ip_address(server_ip.strip()))

    candidate = network.network_address + 1 if network.num_addresses > 1 else network.network_address
    last = network.broadcast_address
    while candidate <= last:
        if candidate not in reserved and candidate not in taken:
            return str(candidate)
        if candidate == last:
            break
        candidate += 1
    raise NoAvailableAddressError(str(network))
