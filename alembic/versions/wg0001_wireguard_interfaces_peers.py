"""Create WireGuard interface and peer tables.

Revision ID: wg0001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "wg0001"
down_revision = None
branch_labels = None
depends_on = None

interface_status = sa.Enum("stopped", "running", name="wireguardinterfacestatus")
peer_status = sa.Enum("connected", "disconnected", name="wireguardpeerstatus")


def upgrade() -> None:
    op.create_table(
        "wireguard_interfaces",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=15), nullable=False),
        sa.Column("private_key", sa.Text(), nullable=True),
        sa.Column("public_key", sa.String(length=64), nullable=True),
        sa.Column("listen_port", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(length=64), nullable=False),
        sa.Column("cidr", sa.String(length=64), nullable=True),
        sa.Column("server_ip", sa.String(length=64), nullable=True),
        sa.Column("dns", sa.String(length=255), nullable=True),
        sa.Column("mtu", sa.Integer(), nullable=True),
        sa.Column("endpoint", sa.String(length=255), nullable=True),
        sa.Column("status", interface_status, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("name"),
        sa.UniqueConstraint("listen_port"),
    )
    op.create_table(
        "wireguard_peers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "interface_id",
            sa.Integer(),
            sa.ForeignKey("wireguard_interfaces.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("public_key", sa.String(length=64), nullable=False),
        sa.Column("private_key", sa.Text(), nullable=True),
        sa.Column("preshared_key", sa.Text(), nullable=True),
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.Column("allowed_ips", sa.JSON(), nullable=True),
        sa.Column("endpoint", sa.String(length=255), nullable=True),
        sa.Column("persistent_keepalive", sa.Integer(), nullable=True),
        sa.Column("status", peer_status, nullable=True),
        sa.Column("last_handshake", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bytes_received", sa.BigInteger(), nullable=True),
        sa.Column("bytes_sent", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("interface_id", "ip", name="uq_wireguard_peers_interface_ip"),
        sa.UniqueConstraint(
            "interface_id", "public_key", name="uq_wireguard_peers_interface_public_key"
        ),
    )
    op.create_index(
        "ix_wireguard_peers_interface_id", "wireguard_peers", ["interface_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_wireguard_peers_interface_id", table_name="wireguard_peers")
    op.drop_table("wireguard_peers")
    op.drop_table("wireguard_interfaces")
    interface_status.drop(op.get_bind(), checkfirst=True)
    peer_status.drop(op.get_bind(), checkfirst=True)
