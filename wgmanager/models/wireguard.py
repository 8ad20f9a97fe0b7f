"""WireGuard interface and peer models.

An interface row is the declarative description of one kernel tunnel device;
the apply pipeline turns it (plus its peers) into live link state.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wgmanager.db import Base


class WireGuardInterfaceStatus(enum.Enum):
    stopped = "stopped"
    running = "running"


class WireGuardPeerStatus(enum.Enum):
    """Derived from handshake recency; a cache of live state, not authoritative."""

    connected = "connected"
    disconnected = "disconnected"


class WireGuardInterface(Base):
    __tablename__ = "wireguard_interfaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(15), nullable=False, unique=True)

    # Keypair (private key encrypted at rest, see wireguard_crypto)
    private_key: Mapped[str | None] = mapped_column(Text)
    public_key: Mapped[str | None] = mapped_column(String(64))

    listen_port: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    address: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. 10.8.0.1/24

    # Derived from address once, see WireGuardInterfaceService.backfill_network_info
    cidr: Mapped[str | None] = mapped_column(String(64))
    server_ip: Mapped[str | None] = mapped_column(String(64))

    dns: Mapped[str | None] = mapped_column(String(255), default="8.8.8.8")
    mtu: Mapped[int] = mapped_column(Integer, default=1420)
    endpoint: Mapped[str | None] = mapped_column(String(255))  # public host[:port]

    status: Mapped[WireGuardInterfaceStatus] = mapped_column(
        Enum(WireGuardInterfaceStatus), default=WireGuardInterfaceStatus.stopped
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    peers = relationship(
        "WireGuardPeer",
        back_populates="interface",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WireGuardPeer.id",
    )


class WireGuardPeer(Base):
    __tablename__ = "wireguard_peers"
    __table_args__ = (
        UniqueConstraint("interface_id", "ip", name="uq_wireguard_peers_interface_ip"),
        UniqueConstraint(
            "interface_id", "public_key", name="uq_wireguard_peers_interface_public_key"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    interface_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("wireguard_interfaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(160), nullable=False)

    public_key: Mapped[str] = mapped_column(String(64), nullable=False)
    private_key: Mapped[str | None] = mapped_column(Text)  # only for server-generated keys
    preshared_key: Mapped[str | None] = mapped_column(Text)

    ip: Mapped[str] = mapped_column(String(64), nullable=False)
    allowed_ips: Mapped[list | None] = mapped_column(JSON)  # CIDR list
    endpoint: Mapped[str | None] = mapped_column(String(255))  # host:port
    persistent_keepalive: Mapped[int] = mapped_column(Integer, default=25)

    # Read-through cache of live device state
    status: Mapped[WireGuardPeerStatus] = mapped_column(
        Enum(WireGuardPeerStatus), default=WireGuardPeerStatus.disconnected
    )
    last_handshake: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    bytes_received: Mapped[int] = mapped_column(BigInteger, default=0)
    bytes_sent: Mapped[int] = mapped_column(BigInteger, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    interface = relationship("WireGuardInterface", back_populates="peers")
