"""Kernel boundary for WireGuard devices.

Everything that touches the live network stack goes through
``WireGuardSystemService``, which drives the ``ip`` and ``wg`` command line
tools. Failed commands raise ``NetworkCommandError`` carrying the tool's own
diagnostic output. The module-level ``wg_system`` instance is what the rest of
the package calls, so tests can swap it for a fake.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass, field

from wgmanager.config import settings
from wgmanager.services.errors import NetworkCommandError
from wgmanager.services.wireguard_config import format_config, join_allowed_ips

logger = logging.getLogger(__name__)

_ABSENT_MARKERS = (
    "cannot find device",
    "does not exist",
    "no such device",
    "is not a wireguard interface",
    "unable to access interface",
)
_EXISTS_MARKERS = ("file exists", "already exists")


@dataclass
class PeerConfig:
    public_key: str
    allowed_ips: list[str] = field(default_factory=list)
    endpoint: str | None = None
    persistent_keepalive: int | None = None
    preshared_key: str | None = None


@dataclass
class DevicePeer:
    public_key: str
    endpoint: str | None = None
    allowed_ips: list[str] = field(default_factory=list)
    latest_handshake: int = 0  # unix seconds, 0 means never
    rx_bytes: int = 0
    tx_bytes: int = 0
    persistent_keepalive: int | None = None


@dataclass
class DeviceState:
    public_key: str | None
    listen_port: int | None
    peers: list[DevicePeer] = field(default_factory=list)


@dataclass
class LinkInfo:
    name: str
    index: int | None = None
    is_up: bool = False
    mtu: int | None = None
    addresses: list[str] = field(default_factory=list)


def is_already_absent(exc: BaseException) -> bool:
    """True when a teardown command failed only because the device is gone."""
    if not isinstance(exc, NetworkCommandError):
        return False
    text = exc.output.lower()
    return any(marker in text for marker in _ABSENT_MARKERS)


def _is_already_present(exc: NetworkCommandError) -> bool:
    text = exc.output.lower()
    return any(marker in text for marker in _EXISTS_MARKERS)


def _int_or_zero(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_dump(output: str) -> DeviceState | None:
    """Parse ``wg show <dev> dump`` output.

    The first line describes the device (private key, public key, listen
    port, fwmark); each following line is one peer (public key, preshared
    key, endpoint, allowed ips, latest handshake, rx, tx, keepalive).
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        return None
    head = lines[0].split("\t")
    if len(head) < 3:
        return None
    state = DeviceState(
        public_key=head[1] if head[1] != "(none)" else None,
        listen_port=_int_or_zero(head[2]) or None,
    )
    for line in lines[1:]:
        parts = line.split("\t")
        if len(parts) < 8:
            continue
        allowed = [] if parts[3] == "(none)" else [p for p in parts[3].split(",") if p]
        keepalive = _int_or_zero(parts[7]) if parts[7] != "off" else None
        state.peers.append(
            DevicePeer(
                public_key=parts[0],
                endpoint=parts[2] if parts[2] != "(none)" else None,
                allowed_ips=allowed,
                latest_handshake=_int_or_zero(parts[4]),
                rx_bytes=_int_or_zero(parts[5]),
                tx_bytes=_int_or_zero(parts[6]),
                persistent_keepalive=keepalive,
            )
        )
    return state


def render_device_config(
    private_key: str, listen_port: int, peers: list[PeerConfig]
) -> str:
    """Text accepted by ``wg setconf``/``wg syncconf`` (no wg-quick keys)."""
    return format_config(
        [("PrivateKey", private_key), ("ListenPort", listen_port)],
        [
            [
                ("PublicKey", peer.public_key),
                ("PresharedKey", peer.preshared_key),
                ("AllowedIPs", join_allowed_ips(peer.allowed_ips)),
                ("Endpoint", peer.endpoint),
                ("PersistentKeepalive", peer.persistent_keepalive or None),
            ]
            for peer in peers
        ],
    )


class WireGuardSystemService:
    """Thin wrapper over the ``ip`` and ``wg`` tools."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout if timeout is not None else settings.wg_command_timeout_seconds

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise NetworkCommandError(cmd, None, f"command not found: {cmd[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise NetworkCommandError(
                cmd, None, f"timed out after {self.timeout}s"
            ) from exc

    def _check(self, cmd: list[str]) -> str:
        result = self._run(cmd)
        if result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip()
            logger.debug("wg_command_failed cmd=%s rc=%s", " ".join(cmd), result.returncode)
            raise NetworkCommandError(cmd, result.returncode, output)
        return result.stdout or ""

    # Link primitives

    def link_exists(self, name: str) -> bool:
        return self._run(["ip", "link", "show", "dev", name]).returncode == 0

    def create_link(self, name: str) -> None:
        try:
            self._check(["ip", "link", "add", "dev", name, "type", "wireguard"])
        except NetworkCommandError as exc:
            if not _is_already_present(exc):
                raise

    def ensure_link(self, name: str) -> None:
        if not self.link_exists(name):
            self.create_link(name)

    def delete_link(self, name: str) -> None:
        self._check(["ip", "link", "del", "dev", name])

    def link_up(self, name: str) -> None:
        self._check(["ip", "link", "set", "dev", name, "up"])

    def link_down(self, name: str) -> None:
        self._check(["ip", "link", "set", "dev", name, "down"])

    def replace_address(self, name: str, address: str) -> None:
        self._check(["ip", "address", "replace", address, "dev", name])

    def set_mtu(self, name: str, mtu: int) -> None:
        self._check(["ip", "link", "set", "dev", name, "mtu", str(mtu)])

    def link_info(self, name: str) -> LinkInfo | None:
        result = self._run(["ip", "-j", "addr", "show", "dev", name])
        if result.returncode != 0 or not (result.stdout or "").strip():
            return None
        try:
            entries = json.loads(result.stdout)
        except ValueError:
            logger.warning("wg_link_info_unparseable interface=%s", name)
            return None
        if not entries:
            return None
        entry = entries[0]
        flags = entry.get("flags") or []
        addresses = [
            f"{addr['local']}/{addr['prefixlen']}"
            for addr in entry.get("addr_info") or []
            if addr.get("local") and addr.get("prefixlen") is not None
        ]
        return LinkInfo(
            name=entry.get("ifname", name),
            index=entry.get("ifindex"),
            is_up="UP" in flags,
            mtu=entry.get("mtu"),
            addresses=addresses,
        )

    # Tunnel device primitives

    def configure_device(
        self, name: str, private_key: str, listen_port: int, peers: list[PeerConfig]
    ) -> None:
        """Set key and port and replace the device's whole peer set."""
        text = render_device_config(private_key, listen_port, peers)
        fd, path = tempfile.mkstemp(prefix=f"{name}-", suffix=".conf")
        try:
            # mkstemp already creates the file 0600
            with os.fdopen(fd, "w") as handle:
                handle.write(text)
            self._check(["wg", "syncconf", name, path])
        finally:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    def show_device(self, name: str) -> DeviceState | None:
        result = self._run(["wg", "show", name, "dump"])
        if result.returncode != 0:
            return None
        return parse_dump(result.stdout or "")


wg_system = WireGuardSystemService()
