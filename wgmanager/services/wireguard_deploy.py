"""Apply stored interface configuration to the kernel.

``apply`` is idempotent: running it twice against unchanged rows leaves the
device in the same state. Steps run in a fixed order (link, device keys and
peers, address, MTU, up) and the row is only marked running once all of them
succeeded. Every operation on one interface name holds that name's lock, so
overlapping start/stop/apply calls in this process cannot interleave commands.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
import time

from fastapi import HTTPException
from sqlalchemy.orm import Session

from wgmanager.config import settings
from wgmanager.metrics import observe_apply
from wgmanager.models.wireguard import (
    WireGuardInterface,
    WireGuardInterfaceStatus,
    WireGuardPeer,
)
from wgmanager.services import ipam
from wgmanager.services import wireguard_system
from wgmanager.services.errors import (
    BadRequestError,
    InternalError,
    MissingKeyError,
    NetworkCommandError,
    NotFoundError,
)
from wgmanager.services.wireguard_crypto import decrypt_private_key
from wgmanager.services.wireguard_system import PeerConfig, is_already_absent

logger = logging.getLogger(__name__)

_locks: dict[str, threading.RLock] = {}
_locks_guard = threading.Lock()


def interface_lock(name: str) -> threading.RLock:
    """Process-wide re-entrant lock for one interface name."""
    with _locks_guard:
        lock = _locks.get(name)
        if lock is None:
            lock = threading.RLock()
            _locks[name] = lock
        return lock


def discard_interface_lock(name: str) -> None:
    """Forget the lock of an interface that no longer exists."""
    with _locks_guard:
        _locks.pop(name, None)


def _system() -> wireguard_system.WireGuardSystemService:
    return wireguard_system.wg_system


def _get_interface(db: Session, interface_id: int) -> WireGuardInterface:
    interface = db.get(WireGuardInterface, interface_id)
    if not interface:
        raise NotFoundError("Interface not found")
    return interface


def parse_endpoint(value: str) -> tuple[str, int]:
    """Split ``host:port`` / ``[v6]:port`` and validate the port."""
    text = value.strip()
    if text.startswith("["):
        host, sep, port = text[1:].partition("]:")
    else:
        host, sep, port = text.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"invalid endpoint {value!r}, expected host:port")
    port_number = int(port)
    if not 0 < port_number < 65536:
        raise ValueError(f"invalid endpoint port in {value!r}")
    return host, port_number


def _peer_config(peer: WireGuardPeer) -> PeerConfig:
    allowed = [v.strip() for v in (peer.allowed_ips or []) if v and v.strip()]
    if not allowed:
        allowed = [ipam.host_route(peer.ip)]
    for value in allowed:
        try:
            ipaddress.ip_network(value, strict=False)
        except ValueError as exc:
            raise BadRequestError(
                f"peer {peer.name}: invalid allowed ip {value!r}"
            ) from exc
    endpoint = None
    if peer.endpoint:
        try:
            parse_endpoint(peer.endpoint)
        except ValueError as exc:
            raise BadRequestError(f"peer {peer.name}: {exc}") from exc
        endpoint = peer.endpoint.strip()
    preshared_key = None
    if peer.preshared_key:
        try:
            preshared_key = decrypt_private_key(peer.preshared_key)
        except ValueError as exc:
            raise InternalError(
                f"peer {peer.name}: cannot read preshared key: {exc}"
            ) from exc
    keepalive = peer.persistent_keepalive if peer.persistent_keepalive else None
    return PeerConfig(
        public_key=peer.public_key,
        allowed_ips=allowed,
        endpoint=endpoint,
        persistent_keepalive=keepalive,
        preshared_key=preshared_key,
    )


def build_peer_configs(db: Session, interface: WireGuardInterface) -> list[PeerConfig]:
    """Kernel peer entries; peers without a public key are not provisioned yet."""
    peers = (
        db.query(WireGuardPeer)
        .filter(WireGuardPeer.interface_id == interface.id)
        .order_by(WireGuardPeer.id)
        .all()
    )
    return [_peer_config(peer) for peer in peers if peer.public_key]


def _apply_locked(db: Session, interface: WireGuardInterface, operation: str) -> None:
    started = time.monotonic()
    name = interface.name
    try:
        if not interface.private_key:
            raise MissingKeyError()
        try:
            private_key = decrypt_private_key(interface.private_key)
        except ValueError as exc:
            raise InternalError(f"cannot read private key for {name}: {exc}") from exc
        peers = build_peer_configs(db, interface)

        system = _system()
        system.ensure_link(name)
        system.configure_device(name, private_key, interface.listen_port, peers)
        system.replace_address(name, interface.address)
        if interface.mtu and interface.mtu > 0:
            system.set_mtu(name, interface.mtu)
        system.link_up(name)
    except NetworkCommandError as exc:
        observe_apply(operation, "error", time.monotonic() - started)
        logger.error("wg_apply_failed interface=%s error=%s", name, exc)
        raise InternalError(str(exc)) from exc
    except Exception:
        observe_apply(operation, "error", time.monotonic() - started)
        raise

    interface.status = WireGuardInterfaceStatus.running
    db.commit()
    db.refresh(interface)
    observe_apply(operation, "success", time.monotonic() - started)
    logger.info(
        "wg_apply_ok interface=%s peers=%s duration=%.3f",
        name,
        len(peers),
        time.monotonic() - started,
    )


def apply(db: Session, interface_id: int) -> WireGuardInterface:
    """Converge the kernel device for ``interface_id`` onto the stored rows."""
    interface = _get_interface(db, interface_id)
    if not interface.private_key:
        raise MissingKeyError()
    with interface_lock(interface.name):
        _apply_locked(db, interface, "apply")
    return interface


def start(db: Session, interface_id: int) -> WireGuardInterface:
    interface = _get_interface(db, interface_id)
    with interface_lock(interface.name):
        _apply_locked(db, interface, "start")
    return interface


def _stop_locked(db: Session, interface: WireGuardInterface) -> list[str]:
    started = time.monotonic()
    system = _system()
    warnings: list[str] = []
    for step, action in (
        ("link down", system.link_down),
        ("link delete", system.delete_link),
    ):
        try:
            action(interface.name)
        except NetworkCommandError as exc:
            if is_already_absent(exc):
                logger.debug("wg_teardown_absent interface=%s step=%s", interface.name, step)
                continue
            logger.warning(
                "wg_teardown_step_failed interface=%s step=%s error=%s",
                interface.name,
                step,
                exc,
            )
            warnings.append(f"{step}: {exc}")
    interface.status = WireGuardInterfaceStatus.stopped
    db.commit()
    db.refresh(interface)
    observe_apply("stop", "warning" if warnings else "success", time.monotonic() - started)
    logger.info("wg_stop interface=%s warnings=%s", interface.name, len(warnings))
    return warnings


def stop(db: Session, interface_id: int) -> list[str]:
    """Tear the device down and mark the row stopped.

    Teardown is best-effort: a device that is already gone is not an error,
    anything else unexpected is returned as a warning rather than raised.
    """
    interface = _get_interface(db, interface_id)
    with interface_lock(interface.name):
        return _stop_locked(db, interface)


def restart(db: Session, interface_id: int) -> tuple[WireGuardInterface, list[str]]:
    interface = _get_interface(db, interface_id)
    with interface_lock(interface.name):
        warnings = _stop_locked(db, interface)
        # let the kernel release the device name and port
        time.sleep(settings.restart_grace_seconds)
        _apply_locked(db, interface, "restart")
    return interface, warnings


def restart_all(db: Session) -> list[str]:
    """Restart every interface; one failure does not stop the others.

    Returns the names of restarted interfaces. Raises InternalError listing
    each failed interface when any restart failed.
    """
    interfaces = db.query(WireGuardInterface).order_by(WireGuardInterface.id).all()
    restarted: list[str] = []
    errors: list[str] = []
    for interface_id, name in [(i.id, i.name) for i in interfaces]:
        try:
            restart(db, interface_id)
        except HTTPException as exc:
            db.rollback()
            errors.append(f"{name}: {exc.detail}")
            continue
        except Exception as exc:
            db.rollback()
            logger.exception("wg_restart_failed interface=%s", name)
            errors.append(f"{name}: {exc}")
            continue
        restarted.append(name)
    if errors:
        logger.warning("wg_restart_all_errors failed=%s", len(errors))
        raise InternalError("restart finished with errors: " + "; ".join(errors))
    logger.info("wg_restart_all_ok interfaces=%s", len(restarted))
    return restarted
