"""WireGuard interface and peer management.

Interfaces and peers are plain rows; anything that has to reach the kernel is
delegated to ``wireguard_deploy``. Peer creation is the one concurrency
sensitive path: address allocation and insert run inside a serializable
transaction that is retried on a uniqueness collision.
"""

from __future__ import annotations

import ipaddress
import logging

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from wgmanager.config import settings
from wgmanager.metrics import WIREGUARD_PEER_ALLOCATION_RETRIES
from wgmanager.models.wireguard import (
    WireGuardInterface,
    WireGuardInterfaceStatus,
    WireGuardPeer,
)
from wgmanager.schemas.wireguard import (
    WireGuardInterfaceCreate,
    WireGuardInterfaceRead,
    WireGuardInterfaceUpdate,
    WireGuardPeerCreate,
    WireGuardPeerUpdate,
)
from wgmanager.services import ipam, wireguard_deploy
from wgmanager.services.common import apply_pagination, get_or_404
from wgmanager.services.errors import (
    BadRequestError,
    ConflictError,
    InternalError,
    NoAvailableAddressError,
)
from wgmanager.services.retry import (
    is_transient_conflict,
    is_unique_violation,
    run_in_transaction,
)
from wgmanager.services.wireguard_crypto import (
    derive_public_key,
    encrypt_private_key,
    generate_keypair,
    generate_preshared_key,
    validate_key,
)

logger = logging.getLogger(__name__)


def _normalize_allowed_ips(values: list[str] | None) -> list[str]:
    """Validate CIDRs; bare addresses become host routes."""
    normalized: list[str] = []
    for value in values or []:
        text = value.strip()
        if not text:
            continue
        try:
            if "/" in text:
                network = ipaddress.ip_network(text, strict=False)
                normalized.append(str(network))
            else:
                normalized.append(ipam.host_route(text))
        except ValueError as exc:
            raise BadRequestError(f"invalid allowed ip {value!r}") from exc
    return normalized


def _normalize_endpoint(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    try:
        wireguard_deploy.parse_endpoint(value)
    except ValueError as exc:
        raise BadRequestError(str(exc)) from exc
    return value.strip()


def ensure_network_info(db: Session, interface: WireGuardInterface) -> tuple[str, str]:
    """Return ``(cidr, server_ip)``, deriving and storing them when missing.

    Writes go through ``db`` without committing so they land in the caller's
    transaction.
    """
    if interface.cidr and interface.server_ip:
        return interface.cidr, interface.server_ip
    try:
        cidr, server_ip = ipam.split_interface_address(interface.address)
    except ValueError as exc:
        raise BadRequestError("interface missing network info (cidr/server_ip)") from exc
    interface.cidr = cidr
    interface.server_ip = server_ip
    db.flush()
    return cidr, server_ip


def _auto_apply(db: Session, interface_id: int) -> None:
    """Re-apply a running interface after its peer set changed.

    Failures are logged, not raised: the row change already succeeded and the
    operator can restart the interface.
    """
    interface = db.get(WireGuardInterface, interface_id)
    if not interface or interface.status != WireGuardInterfaceStatus.running:
        return
    try:
        wireguard_deploy.apply(db, interface_id)
    except HTTPException as exc:
        logger.warning(
            "wg_auto_apply_failed interface=%s error=%s", interface.name, exc.detail
        )


class WireGuardInterfaceService:
    @staticmethod
    def create(db: Session, payload: WireGuardInterfaceCreate) -> WireGuardInterface:
        try:
            cidr, server_ip = ipam.split_interface_address(payload.address)
        except ValueError as exc:
            raise BadRequestError(
                "invalid interface address, expected CIDR such as 10.8.0.1/24"
            ) from exc

        if payload.private_key:
            private_key = payload.private_key.strip()
            if not validate_key(private_key):
                raise BadRequestError("invalid private key")
            public_key = derive_public_key(private_key)
        else:
            private_key, public_key = generate_keypair()

        existing = (
            db.query(WireGuardInterface)
            .filter(
                (WireGuardInterface.name == payload.name)
                | (WireGuardInterface.listen_port == payload.listen_port)
            )
            .first()
        )
        if existing:
            if existing.name == payload.name:
                raise ConflictError(f"interface {payload.name} already exists")
            raise ConflictError(f"listen port {payload.listen_port} already in use")

        interface = WireGuardInterface(
            name=payload.name,
            private_key=encrypt_private_key(private_key),
            public_key=public_key,
            listen_port=payload.listen_port,
            address=str(ipaddress.ip_interface(payload.address.strip())),
            cidr=cidr,
            server_ip=server_ip,
            dns=payload.dns if payload.dns is not None else settings.default_dns,
            mtu=payload.mtu or settings.default_mtu,
            endpoint=_normalize_endpoint_host(payload.endpoint),
            status=WireGuardInterfaceStatus.stopped,
        )
        db.add(interface)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("interface name or listen port already in use") from exc
        db.refresh(interface)
        logger.info(
            "wg_interface_created name=%s address=%s port=%s",
            interface.name,
            interface.address,
            interface.listen_port,
        )
        return interface

    @staticmethod
    def get(db: Session, interface_id: int) -> WireGuardInterface:
        return get_or_404(db, WireGuardInterface, interface_id, "Interface not found")

    @staticmethod
    def list(db: Session, limit: int = 100, offset: int = 0) -> list[WireGuardInterface]:
        query = db.query(WireGuardInterface).order_by(WireGuardInterface.id)
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(
        db: Session, interface_id: int, payload: WireGuardInterfaceUpdate
    ) -> WireGuardInterface:
        interface = WireGuardInterfaceService.get(db, interface_id)
        data = payload.model_dump(exclude_unset=True)
        if "endpoint" in data:
            data["endpoint"] = _normalize_endpoint_host(data["endpoint"])
        if "mtu" in data and data["mtu"] is None:
            data["mtu"] = settings.default_mtu
        for key, value in data.items():
            setattr(interface, key, value)
        db.commit()
        db.refresh(interface)
        logger.info("wg_interface_updated name=%s fields=%s", interface.name, sorted(data))
        if "mtu" in data:
            _auto_apply(db, interface.id)
        return interface

    @staticmethod
    def delete(db: Session, interface_id: int) -> list[str]:
        """Tear down the device, then drop the row and (by cascade) its peers."""
        interface = WireGuardInterfaceService.get(db, interface_id)
        name = interface.name
        with wireguard_deploy.interface_lock(name):
            warnings = wireguard_deploy.stop(db, interface_id)
            db.delete(interface)
            db.commit()
        wireguard_deploy.discard_interface_lock(name)
        logger.info("wg_interface_deleted name=%s warnings=%s", name, len(warnings))
        return warnings

    @staticmethod
    def backfill_network_info(db: Session) -> int:
        """Populate or correct cidr/server_ip on every interface row.

        Run once at startup so every row carries its derived network info
        before any peer is provisioned. Returns the number of rows changed.
        """
        changed = 0
        for interface in db.query(WireGuardInterface).order_by(WireGuardInterface.id):
            try:
                cidr, server_ip = ipam.split_interface_address(interface.address)
            except ValueError:
                logger.warning(
                    "wg_backfill_invalid_address interface=%s address=%s",
                    interface.name,
                    interface.address,
                )
                continue
            if interface.cidr == cidr and interface.server_ip == server_ip:
                continue
            interface.cidr = cidr
            interface.server_ip = server_ip
            changed += 1
        if changed:
            db.commit()
            logger.info("wg_backfill_network_info updated=%s", changed)
        return changed

    @staticmethod
    def to_read_schema(interface: WireGuardInterface, db: Session) -> WireGuardInterfaceRead:
        data = WireGuardInterfaceRead.model_validate(interface)
        data.peer_count = (
            db.query(func.count(WireGuardPeer.id))
            .filter(WireGuardPeer.interface_id == interface.id)
            .scalar()
            or 0
        )
        return data


def _normalize_endpoint_host(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def _provisioning_sessions(db: Session) -> sessionmaker:
    return sessionmaker(bind=db.get_bind(), autoflush=False, expire_on_commit=False)


class WireGuardPeerService:
    @staticmethod
    def create(
        db: Session,
        payload: WireGuardPeerCreate,
        session_factory: sessionmaker | None = None,
    ) -> WireGuardPeer:
        """Provision a peer with the lowest free address on its interface.

        Every attempt opens a new serializable transaction, so a retry sees
        the rows committed by whichever concurrent request won the previous
        collision.
        """
        interface = WireGuardInterfaceService.get(db, payload.interface_id)
        interface_id = interface.id
        interface_name = interface.name
        # release the request connection; each attempt checks out its own
        db.rollback()

        keepalive = payload.persistent_keepalive
        if keepalive is None or keepalive <= 0:
            keepalive = settings.default_persistent_keepalive

        stored_private_key = None
        if payload.public_key:
            public_key = payload.public_key.strip()
            if not validate_key(public_key):
                raise BadRequestError("invalid public key")
        else:
            private_key, public_key = generate_keypair()
            stored_private_key = encrypt_private_key(private_key)
        preshared_key = (
            encrypt_private_key(generate_preshared_key()) if payload.use_preshared_key else None
        )
        requested_allowed_ips = _normalize_allowed_ips(payload.allowed_ips)
        endpoint = _normalize_endpoint(payload.endpoint)

        def allocate_and_insert(session: Session) -> int:
            iface = session.get(WireGuardInterface, interface_id)
            if iface is None:
                raise BadRequestError("interface no longer exists")
            cidr, server_ip = ensure_network_info(session, iface)

            duplicate = (
                session.query(WireGuardPeer.id)
                .filter(WireGuardPeer.interface_id == interface_id)
                .filter(WireGuardPeer.public_key == public_key)
                .first()
            )
            if duplicate:
                raise ConflictError("peer public key already exists on this interface")

            used = {
                ip
                for (ip,) in session.query(WireGuardPeer.ip).filter(
                    WireGuardPeer.interface_id == interface_id
                )
            }
            used.add(server_ip)
            try:
                ip = ipam.allocate_next_ip(cidr, used, server_ip)
            except NoAvailableAddressError as exc:
                raise ConflictError(f"no available ip in {cidr}") from exc

            peer = WireGuardPeer(
                interface_id=interface_id,
                name=payload.name,
                public_key=public_key,
                private_key=stored_private_key,
                preshared_key=preshared_key,
                ip=ip,
                allowed_ips=requested_allowed_ips or [ipam.host_route(ip)],
                endpoint=endpoint,
                persistent_keepalive=keepalive,
            )
            session.add(peer)
            session.flush()
            return peer.id

        try:
            peer_id = run_in_transaction(
                session_factory or _provisioning_sessions(db),
                allocate_and_insert,
                max_attempts=settings.peer_create_max_attempts,
                is_retryable=is_transient_conflict,
                isolation_level=settings.peer_create_isolation_level,
                on_retry=lambda attempt, exc: WIREGUARD_PEER_ALLOCATION_RETRIES.inc(),
            )
        except SQLAlchemyError as exc:
            if is_transient_conflict(exc):
                raise ConflictError("ip already allocated in this interface") from exc
            logger.error("wg_peer_create_failed interface=%s error=%s", interface_id, exc)
            raise InternalError("failed to create peer") from exc

        db.expire_all()
        peer = WireGuardPeerService.get(db, peer_id)
        logger.info(
            "wg_peer_created interface=%s peer=%s ip=%s", interface_name, peer.name, peer.ip
        )
        _auto_apply(db, interface_id)
        return peer

    @staticmethod
    def get(db: Session, peer_id: int) -> WireGuardPeer:
        return get_or_404(db, WireGuardPeer, peer_id, "Peer not found")

    @staticmethod
    def list(
        db: Session,
        interface_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WireGuardPeer]:
        query = db.query(WireGuardPeer)
        if interface_id is not None:
            query = query.filter(WireGuardPeer.interface_id == interface_id)
        query = query.order_by(WireGuardPeer.interface_id, WireGuardPeer.id)
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(db: Session, peer_id: int, payload: WireGuardPeerUpdate) -> WireGuardPeer:
        """Patch name, allowed ips, endpoint or keepalive; identity is fixed."""
        peer = WireGuardPeerService.get(db, peer_id)
        data = payload.model_dump(exclude_unset=True)
        if "name" in data and data["name"] is not None:
            peer.name = data["name"]
        if "allowed_ips" in data:
            peer.allowed_ips = _normalize_allowed_ips(data["allowed_ips"]) or [
                ipam.host_route(peer.ip)
            ]
        if "endpoint" in data:
            peer.endpoint = _normalize_endpoint(data["endpoint"])
        if "persistent_keepalive" in data:
            value = data["persistent_keepalive"]
            peer.persistent_keepalive = (
                settings.default_persistent_keepalive if value is None else value
            )
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if is_unique_violation(exc):
                raise ConflictError("peer update conflicts with an existing peer") from exc
            raise
        db.refresh(peer)
        logger.info("wg_peer_updated peer=%s fields=%s", peer.id, sorted(data))
        _auto_apply(db, peer.interface_id)
        return peer

    @staticmethod
    def delete(db: Session, peer_id: int) -> None:
        peer = WireGuardPeerService.get(db, peer_id)
        interface_id = peer.interface_id
        db.delete(peer)
        db.commit()
        logger.info("wg_peer_deleted peer=%s interface=%s", peer_id, interface_id)
        _auto_apply(db, interface_id)


wg_interfaces = WireGuardInterfaceService()
wg_peers = WireGuardPeerService()
