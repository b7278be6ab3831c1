#!/usr/bin/env python3
"""
Unit tests for network interface enumeration.

Adapters are faked; nothing here depends on the host's network setup.
"""

import unittest
from types import SimpleNamespace
from unittest import mock

from orbitdrop.interfaces import (
    GLOBAL_BROADCAST, get_broadcast_addresses, get_ipv4_interfaces, get_local_addresses
)


def adapter(name, *ips):
    return SimpleNamespace(
        nice_name=name,
        ips=[
            SimpleNamespace(ip=ip, network_prefix=prefix, is_IPv4=isinstance(ip, str))
            for ip, prefix in ips
        ],
    )


ADAPTERS = [
    adapter("lo", ("127.0.0.1", 8), (("::1", 0, 0), 128)),
    adapter("eth0", ("192.168.1.23", 24), (("fe80::1", 0, 2), 64)),
    adapter("wlan0", ("10.20.0.5", 16)),
    adapter("tun0", ("10.8.0.2", 32)),
]


class TestInterfaces(unittest.TestCase):

    def setUp(self):
        patcher = mock.patch('orbitdrop.interfaces.ifaddr.get_adapters', return_value=ADAPTERS)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_ipv4_only(self):
        self.assertEqual(get_ipv4_interfaces(), [
            ("lo", "127.0.0.1", 8),
            ("eth0", "192.168.1.23", 24),
            ("wlan0", "10.20.0.5", 16),
            ("tun0", "10.8.0.2", 32),
        ])

    def test_local_addresses_for_wildcard(self):
        self.assertEqual(
            get_local_addresses('0.0.0.0'),
            ["192.168.1.23", "10.20.0.5", "10.8.0.2", "127.0.0.1"],
        )

    def test_local_addresses_for_specific_host(self):
        self.assertEqual(get_local_addresses('192.168.1.23'), ['192.168.1.23'])

    def test_broadcast_addresses(self):
        # Loopback and point-to-point links have no directed broadcast
        self.assertEqual(
            get_broadcast_addresses(),
            [GLOBAL_BROADCAST, "192.168.1.255", "10.20.255.255"],
        )

    def test_no_adapters(self):
        with mock.patch('orbitdrop.interfaces.ifaddr.get_adapters', return_value=[]):
            self.assertEqual(get_local_addresses(''), ['127.0.0.1'])
            self.assertEqual(get_broadcast_addresses(), [GLOBAL_BROADCAST])


if __name__ == '__main__':
    unittest.main()
