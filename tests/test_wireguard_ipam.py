"""Tests for the tunnel subnet allocator."""

from __future__ import annotations

import ipaddress

import pytest

from wgmanager.services.errors import NoAvailableAddressError
from wgmanager.services.ipam import (
    allocate_next_ip,
    host_route,
    split_interface_address,
)


class TestAllocateNextIp:
    def test_first_host_after_server(self):
        assert allocate_next_ip("10.8.0.0/24", {"10.8.0.1"}, "10.8.0.1") == "10.8.0.2"

    def test_server_ip_skipped_even_when_not_in_used(self):
        assert allocate_next_ip("10.8.0.0/24", set(), "10.8.0.1") == "10.8.0.2"

    def test_fills_lowest_gap(self):
        used = {"10.8.0.1", "10.8.0.3", "10.8.0.4"}
        assert allocate_next_ip("10.8.0.0/24", used, "10.8.0.1") == "10.8.0.2"

    def test_used_entries_may_carry_prefix(self):
        used = {"10.8.0.2/32", "10.8.0.3/32"}
        assert allocate_next_ip("10.8.0.0/24", used, "10.8.0.1") == "10.8.0.4"

    def test_server_not_first_address(self):
        assert allocate_next_ip("10.8.0.0/24", set(), "10.8.0.254") == "10.8.0.1"

    def test_deterministic(self):
        used = {"10.8.0.1", "10.8.0.2"}
        first = allocate_next_ip("10.8.0.0/24", used, "10.8.0.1")
        assert allocate_next_ip("10.8.0.0/24", used, "10.8.0.1") == first

    def test_monotonic_as_used_set_grows(self):
        used = {"10.8.0.1"}
        previous = None
        for _ in range(20):
            ip = allocate_next_ip("10.8.0.0/24", used, "10.8.0.1")
            if previous is not None:
                assert ipaddress.ip_address(ip) > ipaddress.ip_address(previous)
            used.add(ip)
            previous = ip

    def test_exhausted_subnet_raises(self):
        # /29: .1-.6 usable, .1 is the server
        used = {f"10.8.0.{i}" for i in range(1, 7)}
        with pytest.raises(NoAvailableAddressError):
            allocate_next_ip("10.8.0.0/29", used, "10.8.0.1")

    def test_never_returns_broadcast(self):
        used = {f"10.8.0.{i}" for i in range(1, 6)}
        assert allocate_next_ip("10.8.0.0/29", used, "10.8.0.1") == "10.8.0.6"
        used.add("10.8.0.6")
        with pytest.raises(NoAvailableAddressError):
            allocate_next_ip("10.8.0.0/29", used, "10.8.0.1")

    @pytest.mark.parametrize("cidr", ["10.8.0.0/30", "192.168.7.0/28", "172.16.0.0/26"])
    def test_reserved_addresses_never_allocated(self, cidr):
        network = ipaddress.ip_network(cidr)
        server_ip = str(network.network_address + 1)
        used: set[str] = set()
        allocated = []
        while True:
            try:
                ip = allocate_next_ip(cidr, used, server_ip)
            except NoAvailableAddressError:
                break
            allocated.append(ip)
            used.add(ip)
        assert str(network.network_address) not in allocated
        assert str(network.broadcast_address) not in allocated
        assert server_ip not in allocated
        assert len(allocated) == network.num_addresses - 3

    def test_slash_31_has_no_broadcast(self):
        assert allocate_next_ip("10.8.0.0/31", set(), None) == "10.8.0.1"

    def test_slash_32_is_full(self):
        with pytest.raises(NoAvailableAddressError):
            allocate_next_ip("10.8.0.5/32", set(), None)

    def test_cidr_with_host_bits(self):
        assert allocate_next_ip("10.8.0.1/24", set(), "10.8.0.1") == "10.8.0.2"

    def test_ipv6(self):
        assert allocate_next_ip("fd00::/64", {"fd00::1"}, "fd00::1") == "fd00::2"

    def test_ipv6_last_address_is_usable(self):
        used = {"fd00::1", "fd00::2"}
        assert allocate_next_ip("fd00::/126", used, "fd00::1") == "fd00::3"

    def test_ipv6_exhausted(self):
        used = {"fd00::1", "fd00::2", "fd00::3"}
        with pytest.raises(NoAvailableAddressError):
            allocate_next_ip("fd00::/126", used, "fd00::1")


class TestSplitInterfaceAddress:
    def test_ipv4(self):
        assert split_interface_address("10.8.0.1/24") == ("10.8.0.0/24", "10.8.0.1")

    def test_ipv6(self):
        assert split_interface_address("fd00::1/64") == ("fd00::/64", "fd00::1")

    @pytest.mark.parametrize("value", ["", "10.8.0.1", "not-an-ip/24", "10.8.0.1/40"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            split_interface_address(value)


class TestHostRoute:
    def test_ipv4(self):
        assert host_route("10.8.0.2") == "10.8.0.2/32"

    def test_ipv6(self):
        assert host_route("fd00::2") == "fd00::2/128"
