"""Pydantic schemas for the WireGuard management API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wgmanager.models.wireguard import WireGuardInterfaceStatus, WireGuardPeerStatus

T = TypeVar("T")


def _coerce_ip_list(value: Any) -> Any:
    """Accept either a list of CIDRs or one comma separated string."""
    if value is None:
        return None
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return value


class APIResponse(BaseModel, Generic[T]):
    """Uniform response envelope."""

    success: bool = True
    data: T | None = None
    message: str | None = None


# ============== Interface Schemas ==============


class WireGuardInterfaceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=15, pattern=r"^[A-Za-z0-9_.-]+$")
    address: str = Field(description="Interface address in CIDR form, e.g. 10.8.0.1/24")
    listen_port: int = Field(ge=1, le=65535)
    private_key: str | None = Field(
        default=None, description="Generated when omitted"
    )
    dns: str | None = None
    mtu: int | None = Field(default=None, ge=576, le=9000)
    endpoint: str | None = Field(
        default=None, max_length=255, description="Public host[:port] for client configs"
    )


class WireGuardInterfaceUpdate(BaseModel):
    """Only tunables; name, keys, port and address are fixed after creation."""

    dns: str | None = None
    mtu: int | None = Field(default=None, ge=576, le=9000)
    endpoint: str | None = Field(default=None, max_length=255)


class WireGuardInterfaceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    public_key: str | None = None
    listen_port: int
    address: str
    cidr: str | None = None
    server_ip: str | None = None
    dns: str | None = None
    mtu: int
    endpoint: str | None = None
    status: WireGuardInterfaceStatus
    peer_count: int = 0
    created_at: datetime
    updated_at: datetime


# ============== Peer Schemas ==============


class WireGuardPeerCreate(BaseModel):
    interface_id: int
    name: str = Field(min_length=1, max_length=160)
    public_key: str | None = Field(
        default=None, description="Generated (with private key) when omitted"
    )
    allowed_ips: list[str] | None = Field(
        default=None,
        description="CIDRs routed to the peer; defaults to its own host route",
    )
    endpoint: str | None = Field(default=None, max_length=255)
    persistent_keepalive: int | None = Field(default=None, le=65535)
    use_preshared_key: bool = False

    split_allowed_ips = field_validator("allowed_ips", mode="before")(_coerce_ip_list)


class WireGuardPeerUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    allowed_ips: list[str] | None = None
    endpoint: str | None = Field(default=None, max_length=255)
    persistent_keepalive: int | None = Field(default=None, ge=0, le=65535)

    split_allowed_ips = field_validator("allowed_ips", mode="before")(_coerce_ip_list)


class WireGuardPeerRead(BaseModel):
    """Peer response; private and preshared keys are never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    interface_id: int
    name: str
    public_key: str
    ip: str
    allowed_ips: list[str] = Field(default_factory=list)
    endpoint: str | None = None
    persistent_keepalive: int
    has_private_key: bool = False
    has_preshared_key: bool = False
    status: WireGuardPeerStatus
    last_handshake: datetime | None = None
    bytes_received: int = 0
    bytes_sent: int = 0
    created_at: datetime
    updated_at: datetime

    @field_validator("allowed_ips", mode="before")
    @classmethod
    def none_as_empty(cls, value):
        return [] if value is None else value


# ============== Status Schemas ==============


class PeerLiveStatus(BaseModel):
    public_key: str
    endpoint: str | None = None
    allowed_ips: list[str] = Field(default_factory=list)
    latest_handshake: int = 0
    rx_bytes: int = 0
    tx_bytes: int = 0
    connected: bool = False


class InterfaceStatusSnapshot(BaseModel):
    interface_id: int
    name: str
    status: str = "unknown"
    is_up: bool = False
    index: int | None = None
    mtu: int | None = None
    addresses: list[str] = Field(default_factory=list)
    listen_port: int | None = None
    public_key: str | None = None
    peers: list[PeerLiveStatus] = Field(default_factory=list)
    sampled_at: datetime


class RestartResult(BaseModel):
    restarted: list[str] = Field(default_factory=list)
