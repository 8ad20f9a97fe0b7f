from wgmanager.tasks.wireguard import (  # noqa: F401
    restart_all_interfaces,
    sync_peer_stats,
)
