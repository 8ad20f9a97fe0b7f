"""WireGuard configuration text rendering and parsing.

Two flavours are produced from stored rows: the server-side wg-quick file for
an interface and the client-side file for a single peer. Rendering is pure
formatting over validated rows; nothing here touches the kernel.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from wgmanager.models.wireguard import WireGuardInterface, WireGuardPeer
from wgmanager.services import ipam
from wgmanager.services.errors import BadRequestError, InternalError, NotFoundError
from wgmanager.services.wireguard_crypto import decrypt_private_key

INTERFACE_CONFIG_FILENAME = "wg-interface.conf"
PEER_CONFIG_FILENAME = "wg-peer.conf"

_DEFAULT_ROUTES = {"0.0.0.0/0", "::/0"}

Pairs = Sequence[tuple[str, object]]


def format_section(title: str, pairs: Pairs) -> str:
    """Render one ``[Title]`` stanza, dropping keys whose value is empty."""
    lines = [f"[{title}]"]
    for key, value in pairs:
        if value is None or value == "" or value == []:
            continue
        lines.append(f"{key} = {value}")
    return "\n".join(lines) + "\n"


def format_config(interface_pairs: Pairs, peers: Iterable[Pairs]) -> str:
    sections = [format_section("Interface", interface_pairs)]
    sections.extend(format_section("Peer", pairs) for pairs in peers)
    return "\n".join(sections)


def join_allowed_ips(values: Iterable[str] | None) -> str:
    return ", ".join(v.strip() for v in (values or []) if v and v.strip())


def server_allowed_ips(peer: WireGuardPeer) -> str:
    """AllowedIPs for a peer as seen from the server.

    The peer's own host route, unless the stored value carries a default
    route, in which case the stored list is kept as-is.
    """
    stored = [v.strip() for v in (peer.allowed_ips or []) if v and v.strip()]
    if _DEFAULT_ROUTES.intersection(stored):
        return join_allowed_ips(stored)
    return ipam.host_route(peer.ip)


def _keepalive(value: int | None) -> int | None:
    return value if value and value > 0 else None


def _read_key(stored: str | None) -> str | None:
    if not stored:
        return None
    try:
        return decrypt_private_key(stored)
    except ValueError as exc:
        raise InternalError(f"cannot read stored key: {exc}") from exc


def render_interface_config(db: Session, interface_id: int) -> str:
    interface = db.get(WireGuardInterface, interface_id)
    if not interface:
        raise NotFoundError("Interface not found")
    if not interface.private_key:
        raise BadRequestError("interface private key is missing")
    if not interface.listen_port:
        raise BadRequestError("interface listen port is missing")
    if not interface.address:
        raise BadRequestError("interface address is missing")

    interface_pairs = [
        ("PrivateKey", _read_key(interface.private_key)),
        ("Address", interface.address),
        ("ListenPort", interface.listen_port),
        ("MTU", interface.mtu if interface.mtu and interface.mtu > 0 else None),
        ("DNS", interface.dns),
    ]
    peers = []
    for peer in interface.peers:
        if not peer.public_key:
            continue
        peers.append(
            [
                ("PublicKey", peer.public_key),
                ("AllowedIPs", server_allowed_ips(peer)),
                ("PresharedKey", _read_key(peer.preshared_key)),
                ("Endpoint", peer.endpoint),
                ("PersistentKeepalive", _keepalive(peer.persistent_keepalive)),
            ]
        )
    return format_config(interface_pairs, peers)


def client_endpoint(interface: WireGuardInterface, fallback_host: str | None) -> str | None:
    """Endpoint a client dials: the interface endpoint or the configured host.

    ``:listen_port`` is appended when the value carries no port.
    """
    host = (interface.endpoint or fallback_host or "").strip()
    if not host:
        return None
    if host.startswith("["):
        return host if "]:" in host else f"{host}:{interface.listen_port}"
    if host.count(":") == 1:
        return host
    if host.count(":") > 1:
        return f"[{host}]:{interface.listen_port}"
    return f"{host}:{interface.listen_port}"


def render_peer_client_config(
    db: Session, peer_id: int, endpoint_host: str | None = None
) -> str:
    peer = db.get(WireGuardPeer, peer_id)
    if not peer:
        raise NotFoundError("Peer not found")
    if not peer.private_key:
        raise BadRequestError(
            "peer private key is not stored; config is only available for server-generated keys"
        )
    interface = peer.interface
    if not interface.public_key:
        raise BadRequestError("interface public key is missing")

    network = ipaddress.ip_network(interface.cidr or interface.address, strict=False)
    default_routes = "0.0.0.0/0" if network.version == 4 else "::/0"

    interface_pairs = [
        ("PrivateKey", _read_key(peer.private_key)),
        ("Address", f"{peer.ip}/{network.prefixlen}"),
        ("MTU", interface.mtu if interface.mtu and interface.mtu > 0 else None),
        ("DNS", interface.dns),
    ]
    server_peer = [
        ("PublicKey", interface.public_key),
        ("AllowedIPs", default_routes),
        ("PresharedKey", _read_key(peer.preshared_key)),
        ("Endpoint", client_endpoint(interface, endpoint_host)),
        ("PersistentKeepalive", _keepalive(peer.persistent_keepalive)),
    ]
    return format_config(interface_pairs, [server_peer])


@dataclass
class ParsedConfig:
    interface: dict[str, str] = field(default_factory=dict)
    peers: list[dict[str, str]] = field(default_factory=list)


def parse_config(text: str) -> ParsedConfig:
    """Parse wg / wg-quick configuration text.

    Keys keep the casing used in the file format (``PrivateKey``,
    ``AllowedIPs``...); comments and blank lines are ignored. Raises
    ValueError on a key outside any section or a line without ``=``.
    """
    parsed = ParsedConfig()
    current: dict[str, str] | None = None
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip().lower()
            if section == "interface":
                current = parsed.interface
            elif section == "peer":
                current = {}
                parsed.peers.append(current)
            else:
                raise ValueError(f"line {lineno}: unknown section [{section}]")
            continue
        if "=" not in line:
            raise ValueError(f"line {lineno}: expected 'Key = value'")
        if current is None:
            raise ValueError(f"line {lineno}: key outside of a section")
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if key in current and key in ("AllowedIPs", "Address", "DNS"):
            current[key] = f"{current[key]}, {value}"
        else:
            current[key] = value
    return parsed


def split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]
