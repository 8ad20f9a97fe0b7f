"""WireGuard management API endpoints."""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from wgmanager.config import settings
from wgmanager.db import get_db
from wgmanager.schemas.wireguard import (
    APIResponse,
    InterfaceStatusSnapshot,
    RestartResult,
    WireGuardInterfaceCreate,
    WireGuardInterfaceRead,
    WireGuardInterfaceUpdate,
    WireGuardPeerCreate,
    WireGuardPeerRead,
    WireGuardPeerUpdate,
)
from wgmanager.services import wireguard as wg_service
from wgmanager.services import wireguard_config, wireguard_deploy, wireguard_status

router = APIRouter(prefix="/wireguard", tags=["wireguard"])


def _attachment(content: str, filename: str) -> PlainTextResponse:
    return PlainTextResponse(
        content=content,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Type": "text/plain; charset=utf-8",
        },
    )


# ============== Interface Endpoints ==============


@router.get(
    "/interfaces",
    response_model=APIResponse[list[WireGuardInterfaceRead]],
    tags=["wireguard-interfaces"],
)
def list_interfaces(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    interfaces = wg_service.wg_interfaces.list(db, limit=limit, offset=offset)
    return APIResponse(
        data=[wg_service.wg_interfaces.to_read_schema(i, db) for i in interfaces]
    )


@router.post(
    "/interfaces",
    response_model=APIResponse[WireGuardInterfaceRead],
    status_code=201,
    tags=["wireguard-interfaces"],
)
def create_interface(payload: WireGuardInterfaceCreate, db: Session = Depends(get_db)):
    """Create an interface; a keypair is generated when none is supplied."""
    interface = wg_service.wg_interfaces.create(db, payload)
    return APIResponse(
        data=wg_service.wg_interfaces.to_read_schema(interface, db),
        message="interface created",
    )


@router.get(
    "/interfaces/{interface_id}",
    response_model=APIResponse[WireGuardInterfaceRead],
    tags=["wireguard-interfaces"],
)
def get_interface(interface_id: int, db: Session = Depends(get_db)):
    interface = wg_service.wg_interfaces.get(db, interface_id)
    return APIResponse(data=wg_service.wg_interfaces.to_read_schema(interface, db))


@router.put(
    "/interfaces/{interface_id}",
    response_model=APIResponse[WireGuardInterfaceRead],
    tags=["wireguard-interfaces"],
)
def update_interface(
    interface_id: int, payload: WireGuardInterfaceUpdate, db: Session = Depends(get_db)
):
    interface = wg_service.wg_interfaces.update(db, interface_id, payload)
    return APIResponse(
        data=wg_service.wg_interfaces.to_read_schema(interface, db),
        message="interface updated",
    )


@router.delete(
    "/interfaces/{interface_id}",
    response_model=APIResponse[list[str]],
    tags=["wireguard-interfaces"],
)
def delete_interface(interface_id: int, db: Session = Depends(get_db)):
    """Stop the device and remove the interface with all of its peers."""
    warnings = wg_service.wg_interfaces.delete(db, interface_id)
    return APIResponse(data=warnings, message="interface deleted")


@router.post(
    "/interfaces/{interface_id}/start",
    response_model=APIResponse[WireGuardInterfaceRead],
    tags=["wireguard-interfaces"],
)
def start_interface(interface_id: int, db: Session = Depends(get_db)):
    interface = wireguard_deploy.start(db, interface_id)
    return APIResponse(
        data=wg_service.wg_interfaces.to_read_schema(interface, db),
        message="interface started",
    )


@router.post(
    "/interfaces/{interface_id}/stop",
    response_model=APIResponse[list[str]],
    tags=["wireguard-interfaces"],
)
def stop_interface(interface_id: int, db: Session = Depends(get_db)):
    warnings = wireguard_deploy.stop(db, interface_id)
    return APIResponse(data=warnings, message="interface stopped")


@router.get(
    "/interfaces/{interface_id}/status",
    response_model=APIResponse[InterfaceStatusSnapshot],
    tags=["wireguard-interfaces"],
)
def get_interface_status(interface_id: int, db: Session = Depends(get_db)):
    return APIResponse(data=wireguard_status.get_interface_status(db, interface_id))


@router.get(
    "/interfaces/{interface_id}/config",
    response_class=PlainTextResponse,
    tags=["wireguard-config"],
)
def download_interface_config(interface_id: int, db: Session = Depends(get_db)):
    content = wireguard_config.render_interface_config(db, interface_id)
    return _attachment(content, wireguard_config.INTERFACE_CONFIG_FILENAME)


# ============== Peer Endpoints ==============


@router.get(
    "/peers",
    response_model=APIResponse[list[WireGuardPeerRead]],
    tags=["wireguard-peers"],
)
def list_peers(
    interface_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    """List peers with live handshake and traffic figures where available."""
    peers = wg_service.wg_peers.list(
        db, interface_id=interface_id, limit=limit, offset=offset
    )
    return APIResponse(data=wireguard_status.overlay_live_stats(db, peers))


@router.post(
    "/peers",
    response_model=APIResponse[WireGuardPeerRead],
    status_code=201,
    tags=["wireguard-peers"],
)
def create_peer(payload: WireGuardPeerCreate, db: Session = Depends(get_db)):
    """Create a peer with the next free address on its interface."""
    peer = wg_service.wg_peers.create(db, payload)
    return APIResponse(data=wireguard_status.to_peer_read(peer), message="peer created")


@router.get(
    "/peers/{peer_id}",
    response_model=APIResponse[WireGuardPeerRead],
    tags=["wireguard-peers"],
)
def get_peer(peer_id: int, db: Session = Depends(get_db)):
    peer = wg_service.wg_peers.get(db, peer_id)
    return APIResponse(data=wireguard_status.overlay_live_stats(db, [peer])[0])


@router.put(
    "/peers/{peer_id}",
    response_model=APIResponse[WireGuardPeerRead],
    tags=["wireguard-peers"],
)
def update_peer(peer_id: int, payload: WireGuardPeerUpdate, db: Session = Depends(get_db)):
    peer = wg_service.wg_peers.update(db, peer_id, payload)
    return APIResponse(data=wireguard_status.to_peer_read(peer), message="peer updated")


@router.delete(
    "/peers/{peer_id}",
    response_model=APIResponse[None],
    tags=["wireguard-peers"],
)
def delete_peer(peer_id: int, db: Session = Depends(get_db)):
    wg_service.wg_peers.delete(db, peer_id)
    return APIResponse(message="peer deleted")


@router.get(
    "/peers/{peer_id}/config",
    response_class=PlainTextResponse,
    tags=["wireguard-config"],
)
def download_peer_config(peer_id: int, db: Session = Depends(get_db)):
    """Client config; only for peers whose keypair the server generated."""
    content = wireguard_config.render_peer_client_config(
        db, peer_id, endpoint_host=settings.wireguard_endpoint_host
    )
    return _attachment(content, wireguard_config.PEER_CONFIG_FILENAME)


# ============== Service Endpoints ==============


@router.post(
    "/restart",
    response_model=APIResponse[RestartResult],
    tags=["wireguard-interfaces"],
)
def restart_all(db: Session = Depends(get_db)):
    restarted = wireguard_deploy.restart_all(db)
    return APIResponse(data=RestartResult(restarted=restarted), message="restart finished")
