from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

import wgmanager.models  # noqa: F401
from wgmanager.db import Base, get_engine
from wgmanager.services import wireguard_system
from wgmanager.services.errors import NetworkCommandError
from wgmanager.services.wireguard_system import DevicePeer, DeviceState, LinkInfo


class FakeWireGuardSystem:
    """In-memory stand-in for the ip/wg command layer.

    Keeps per-link state so tests can assert on the resulting device, and
    records every call in order. ``fail`` maps a method name to the
    exception that method should raise.
    """

    def __init__(self):
        self.links: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.handshakes: dict[str, tuple[int, int, int]] = {}

    def _record(self, method: str, *args):
        self.calls.append((method, *args))
        exc = self.fail.get(method)
        if exc is not None:
            raise exc

    def _require(self, method: str, name: str) -> dict:
        link = self.links.get(name)
        if link is None:
            raise NetworkCommandError(
                ["ip", "link", method, "dev", name],
                1,
                f'Cannot find device "{name}"',
            )
        return link

    def methods(self) -> list[str]:
        return [call[0] for call in self.calls]

    def link_exists(self, name):
        self._record("link_exists", name)
        return name in self.links

    def create_link(self, name):
        self._record("create_link", name)
        self.links.setdefault(
            name,
            {"up": False, "address": None, "mtu": None, "private_key": None,
             "listen_port": None, "peers": []},
        )

    def ensure_link(self, name):
        self._record("ensure_link", name)
        if name not in self.links:
            self.create_link(name)

    def delete_link(self, name):
        self._record("delete_link", name)
        self._require("del", name)
        del self.links[name]

    def link_up(self, name):
        self._record("link_up", name)
        self._require("set", name)["up"] = True

    def link_down(self, name):
        self._record("link_down", name)
        self._require("set", name)["up"] = False

    def replace_address(self, name, address):
        self._record("replace_address", name, address)
        self._require("address", name)["address"] = address

    def set_mtu(self, name, mtu):
        self._record("set_mtu", name, mtu)
        self._require("set", name)["mtu"] = mtu

    def configure_device(self, name, private_key, listen_port, peers):
        self._record("configure_device", name, listen_port, len(peers))
        link = self._require("set", name)
        link["private_key"] = private_key
        link["listen_port"] = listen_port
        link["peers"] = list(peers)

    def show_device(self, name):
        self._record("show_device", name)
        link = self.links.get(name)
        if link is None or link["private_key"] is None:
            return None
        peers = []
        for peer in link["peers"]:
            handshake, rx, tx = self.handshakes.get(peer.public_key, (0, 0, 0))
            peers.append(
                DevicePeer(
                    public_key=peer.public_key,
                    endpoint=peer.endpoint,
                    allowed_ips=list(peer.allowed_ips),
                    latest_handshake=handshake,
                    rx_bytes=rx,
                    tx_bytes=tx,
                    persistent_keepalive=peer.persistent_keepalive,
                )
            )
        return DeviceState(public_key=None, listen_port=link["listen_port"], peers=peers)

    def link_info(self, name):
        self._record("link_info", name)
        link = self.links.get(name)
        if link is None:
            return None
        return LinkInfo(
            name=name,
            index=7,
            is_up=link["up"],
            mtu=link["mtu"],
            addresses=[link["address"]] if link["address"] else [],
        )


@pytest.fixture()
def engine(tmp_path):
    # File backed so every session (and thread) sees committed rows.
    engine = get_engine(f"sqlite:///{tmp_path / 'wgmanager-test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def fake_system(monkeypatch):
    fake = FakeWireGuardSystem()
    monkeypatch.setattr(wireguard_system, "wg_system", fake)
    return fake
