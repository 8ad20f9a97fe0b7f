"""Live status of WireGuard devices.

Reads are best-effort: a device that cannot be queried degrades the snapshot
(status ``unknown`` or ``stopped``) instead of failing the caller. Peer rows
keep a cached copy of the live counters, refreshed by ``sync_peer_stats``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from wgmanager.config import settings
from wgmanager.models.wireguard import (
    WireGuardInterface,
    WireGuardInterfaceStatus,
    WireGuardPeer,
    WireGuardPeerStatus,
)
from wgmanager.schemas.wireguard import (
    InterfaceStatusSnapshot,
    PeerLiveStatus,
    WireGuardPeerRead,
)
from wgmanager.services import wireguard_system
from wgmanager.services.errors import NetworkCommandError, NotFoundError

logger = logging.getLogger(__name__)


def is_connected(latest_handshake: int, now: float | None = None) -> bool:
    """A zero handshake means never; otherwise it must fall inside the window."""
    if not latest_handshake:
        return False
    now = time.time() if now is None else now
    return now - latest_handshake <= settings.handshake_window_seconds


def _handshake_datetime(latest_handshake: int) -> datetime | None:
    if not latest_handshake:
        return None
    return datetime.fromtimestamp(latest_handshake, tz=timezone.utc)


def _read_device(name: str) -> wireguard_system.DeviceState | None:
    try:
        return wireguard_system.wg_system.show_device(name)
    except NetworkCommandError as exc:
        logger.debug("wg_status_device_unavailable interface=%s error=%s", name, exc)
        return None


def get_interface_status(db: Session, interface_id: int) -> InterfaceStatusSnapshot:
    interface = db.get(WireGuardInterface, interface_id)
    if not interface:
        raise NotFoundError("Interface not found")

    snapshot = InterfaceStatusSnapshot(
        interface_id=interface.id,
        name=interface.name,
        sampled_at=datetime.now(timezone.utc),
    )
    try:
        link = wireguard_system.wg_system.link_info(interface.name)
    except NetworkCommandError as exc:
        logger.debug("wg_status_link_unavailable interface=%s error=%s", interface.name, exc)
        link = None
    if link is not None:
        snapshot.status = "stopped"
        snapshot.is_up = link.is_up
        snapshot.index = link.index
        snapshot.mtu = link.mtu
        snapshot.addresses = link.addresses

    device = _read_device(interface.name)
    if device is not None:
        snapshot.status = "running"
        snapshot.listen_port = device.listen_port
        snapshot.public_key = device.public_key
        now = time.time()
        snapshot.peers = [
            PeerLiveStatus(
                public_key=peer.public_key,
                endpoint=peer.endpoint,
                allowed_ips=peer.allowed_ips,
                latest_handshake=peer.latest_handshake,
                rx_bytes=peer.rx_bytes,
                tx_bytes=peer.tx_bytes,
                connected=is_connected(peer.latest_handshake, now),
            )
            for peer in device.peers
        ]
    return snapshot


def _live_peers_by_interface(
    db: Session, interface_ids: set[int]
) -> dict[int, dict[str, wireguard_system.DevicePeer]]:
    result: dict[int, dict[str, wireguard_system.DevicePeer]] = {}
    if not interface_ids:
        return result
    interfaces = (
        db.query(WireGuardInterface).filter(WireGuardInterface.id.in_(interface_ids)).all()
    )
    for interface in interfaces:
        device = _read_device(interface.name)
        if device is None:
            continue
        result[interface.id] = {peer.public_key: peer for peer in device.peers}
    return result


def to_peer_read(
    peer: WireGuardPeer, live: wireguard_system.DevicePeer | None = None
) -> WireGuardPeerRead:
    data = WireGuardPeerRead.model_validate(peer)
    data.has_private_key = bool(peer.private_key)
    data.has_preshared_key = bool(peer.preshared_key)
    data.allowed_ips = list(peer.allowed_ips or [])
    if live is not None:
        connected = is_connected(live.latest_handshake)
        data.status = (
            WireGuardPeerStatus.connected if connected else WireGuardPeerStatus.disconnected
        )
        data.last_handshake = _handshake_datetime(live.latest_handshake)
        data.bytes_received = live.rx_bytes
        data.bytes_sent = live.tx_bytes
    return data


def overlay_live_stats(db: Session, peers: list[WireGuardPeer]) -> list[WireGuardPeerRead]:
    """Peer read models with live device counters laid over the stored ones.

    Rows are not modified; peers whose device cannot be read keep their
    stored values.
    """
    live = _live_peers_by_interface(db, {peer.interface_id for peer in peers})
    return [
        to_peer_read(peer, live.get(peer.interface_id, {}).get(peer.public_key))
        for peer in peers
    ]


def sync_peer_stats(db: Session) -> int:
    """Persist live handshake and traffic counters into the peer rows.

    Only running interfaces are sampled. Returns the number of peers updated.
    """
    running_ids = {
        row.id
        for row in db.query(WireGuardInterface.id)
        .filter(WireGuardInterface.status == WireGuardInterfaceStatus.running)
        .all()
    }
    live = _live_peers_by_interface(db, running_ids)
    updated = 0
    now = time.time()
    for interface_id, device_peers in live.items():
        peers = (
            db.query(WireGuardPeer).filter(WireGuardPeer.interface_id == interface_id).all()
        )
        for peer in peers:
            sample = device_peers.get(peer.public_key)
            if sample is None:
                continue
            connected = is_connected(sample.latest_handshake, now)
            peer.status = (
                WireGuardPeerStatus.connected if connected else WireGuardPeerStatus.disconnected
            )
            peer.last_handshake = _handshake_datetime(sample.latest_handshake)
            peer.bytes_received = sample.rx_bytes
            peer.bytes_sent = sample.tx_bytes
            updated += 1
    db.commit()
    logger.info("wg_peer_stats_synced interfaces=%s peers=%s", len(live), updated)
    return updated


def watch_interface_status(
    session_factory: Callable[[], Session],
    interface_id: int,
    on_update: Callable[[InterfaceStatusSnapshot], None],
    stop_event: threading.Event,
    interval: float | None = None,
) -> None:
    """Push a snapshot now and then every ``interval`` seconds until stopped.

    Cancellation is checked between samples. A failing callback is logged
    and does not end the loop.
    """
    interval = settings.status_poll_interval_seconds if interval is None else interval
    while not stop_event.is_set():
        db = session_factory()
        try:
            snapshot = get_interface_status(db, interface_id)
        finally:
            db.close()
        try:
            on_update(snapshot)
        except Exception:
            logger.exception("wg_status_callback_failed interface_id=%s", interface_id)
        if stop_event.wait(interval):
            break
