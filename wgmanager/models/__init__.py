from wgmanager.models.wireguard import (  # noqa: F401
    WireGuardInterface,
    WireGuardInterfaceStatus,
    WireGuardPeer,
    WireGuardPeerStatus,
)
