"""Import existing wg-quick files into the database at startup.

Each ``<name>.conf`` in the configured directory becomes an interface named
after the file stem unless an interface with that name is already stored.
A file that cannot be parsed is logged and skipped.
"""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wgmanager.config import settings
from wgmanager.models.wireguard import (
    WireGuardInterface,
    WireGuardInterfaceStatus,
    WireGuardPeer,
)
from wgmanager.services import ipam
from wgmanager.services.errors import NoAvailableAddressError
from wgmanager.services.wireguard_config import parse_config, split_list
from wgmanager.services.wireguard_crypto import (
    derive_public_key,
    encrypt_private_key,
    validate_key,
)

logger = logging.getLogger(__name__)


def _peer_ip(allowed_ips: list[str], network) -> str | None:
    """First AllowedIPs address that lies inside the interface subnet."""
    for value in allowed_ips:
        try:
            candidate = ipaddress.ip_network(value, strict=False)
        except ValueError:
            continue
        if candidate.version != network.version:
            continue
        if candidate.subnet_of(network) and candidate.num_addresses == 1:
            return str(candidate.network_address)
    return None


def import_config_text(db: Session, name: str, text: str) -> WireGuardInterface | None:
    """Create an interface (and its peers) from wg-quick text.

    Returns None when an interface called ``name`` already exists. Raises
    ValueError when the text lacks a usable key, address or port.
    """
    if db.query(WireGuardInterface.id).filter(WireGuardInterface.name == name).first():
        return None

    parsed = parse_config(text)
    section = parsed.interface
    private_key = section.get("PrivateKey", "")
    if not validate_key(private_key):
        raise ValueError("missing or invalid PrivateKey")
    addresses = split_list(section.get("Address"))
    if not addresses:
        raise ValueError("missing Address")
    cidr, server_ip = ipam.split_interface_address(addresses[0])
    try:
        listen_port = int(section.get("ListenPort", ""))
    except ValueError as exc:
        raise ValueError("missing or invalid ListenPort") from exc

    mtu = section.get("MTU")
    interface = WireGuardInterface(
        name=name,
        private_key=encrypt_private_key(private_key),
        public_key=derive_public_key(private_key),
        listen_port=listen_port,
        address=addresses[0],
        cidr=cidr,
        server_ip=server_ip,
        dns=section.get("DNS") or settings.default_dns,
        mtu=int(mtu) if mtu and mtu.isdigit() else settings.default_mtu,
        status=WireGuardInterfaceStatus.stopped,
    )
    db.add(interface)
    db.flush()

    network = ipaddress.ip_network(cidr)
    used = {server_ip}
    seen_keys: set[str] = set()
    pending: list[tuple[dict[str, str], list[str], str | None]] = []
    for peer_section in parsed.peers:
        public_key = peer_section.get("PublicKey", "")
        if not validate_key(public_key) or public_key in seen_keys:
            logger.warning("wg_import_peer_skipped interface=%s reason=bad_or_duplicate_key", name)
            continue
        seen_keys.add(public_key)
        allowed = split_list(peer_section.get("AllowedIPs"))
        ip = _peer_ip(allowed, network)
        if ip and ip not in used:
            used.add(ip)
            pending.append((peer_section, allowed, ip))
        else:
            pending.append((peer_section, allowed, None))

    for peer_section, allowed, ip in pending:
        if ip is None:
            try:
                ip = ipam.allocate_next_ip(cidr, used, server_ip)
            except NoAvailableAddressError:
                logger.warning("wg_import_peer_skipped interface=%s reason=subnet_full", name)
                continue
            used.add(ip)
        keepalive = peer_section.get("PersistentKeepalive", "")
        preshared = peer_section.get("PresharedKey")
        db.add(
            WireGuardPeer(
                interface_id=interface.id,
                name=f"{name}-peer-{ip}",
                public_key=peer_section["PublicKey"],
                preshared_key=encrypt_private_key(preshared) if preshared else None,
                ip=ip,
                allowed_ips=allowed or [ipam.host_route(ip)],
                endpoint=peer_section.get("Endpoint") or None,
                persistent_keepalive=int(keepalive) if keepalive.isdigit() else 0,
            )
        )
    db.commit()
    db.refresh(interface)
    logger.info("wg_import_ok interface=%s peers=%s", name, len(pending))
    return interface


def import_directory(db: Session, directory: str | None = None) -> list[str]:
    """Import every ``*.conf`` in ``directory``; returns the imported names."""
    path = Path(directory or settings.wireguard_config_dir)
    if not path.is_dir():
        logger.info("wg_import_skipped reason=missing_dir path=%s", path)
        return []
    imported: list[str] = []
    for conf in sorted(path.glob("*.conf")):
        try:
            text = conf.read_text()
        except OSError as exc:
            logger.warning("wg_import_unreadable path=%s error=%s", conf, exc)
            continue
        try:
            interface = import_config_text(db, conf.stem, text)
        except (ValueError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning("wg_import_failed path=%s error=%s", conf, exc)
            continue
        if interface is not None:
            imported.append(interface.name)
    return imported
