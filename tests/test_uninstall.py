# tests/test_uninstall.py
import copy
import tempfile
import unittest
from pathlib import Path
from unittest import TestCase

from fakes import FakeSystem, make_context
from wg_openwrt.init_server import InitialPeer, InstallOptions, install
from wg_openwrt.uninstall import uninstall


class UninstallTestCase(TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.system = FakeSystem()
        self.system.uci.seed("network", "lan", "interface", proto="static")
        self.system.uci.seed("firewall", "lan_zone", "zone", name="lan", network=["lan"])
        # another WireGuard interface that must survive
        self.system.uci.seed("firewall", "wg01_rule", "rule", name="Allow-WG-wg01", src="wan")
        self.layout = make_context(self.tmp, self.system).layout
        install(self.ctx(), InstallOptions(endpoint="vpn.example.org",
                                           peers=[InitialPeer("laptop"), InitialPeer("phone")]))
        # an anonymous section referring to the interface
        self.system.uci.seed("firewall", "cfg0e92bd", "forwarding", src="wg0", dest="wan")
        self.system.running.add("wg0")
        self.system.calls.clear()

    def tearDown(self):
        self._tmp.cleanup()

    def ctx(self, answer=True):
        return make_context(self.tmp, self.system, layout=self.layout,
                            confirm=lambda question, default: answer)


class TestUninstall(UninstallTestCase):
    def test_dry_run_changes_nothing(self):
        committed = copy.deepcopy(self.system.uci.committed)
        files = sorted(self.layout.root.rglob("*"))
        messages = []

        result = uninstall(self.ctx(), dry_run=True, report=messages.append)

        self.assertEqual(self.system.uci.committed, committed)
        self.assertEqual(self.system.uci.staged, {})
        self.assertEqual(sorted(self.layout.root.rglob("*")), files)
        self.assertIn("wg0", self.system.running)
        self.assertFalse(self.system.ran("uci", "batch"))
        self.assertFalse(self.system.ran("ip", "link", "delete"))
        self.assertEqual(result.summary, "Dry-run complete. No changes were made.")

        self.assertEqual(result.network_sections, ["wg0", "wireguard_wg0_laptop", "wireguard_wg0_phone"])
        self.assertEqual(sorted(result.firewall_sections),
                         ["cfg0e92bd", "lan_to_wg0", "wg0_allow_wan", "wg0_to_lan", "wg0_zone"])
        self.assertEqual(messages, result.steps)
        self.assertTrue(any("Deleting live WireGuard interface" in m for m in messages))

    def test_removes_everything(self):
        result = uninstall(self.ctx())

        network = self.system.uci.committed["network"]
        self.assertEqual(list(network), ["lan"])
        firewall = self.system.uci.committed["firewall"]
        self.assertEqual(sorted(firewall), ["lan_zone", "wg01_rule"])

        self.assertTrue(self.layout.root.is_dir())
        self.assertEqual(list(self.layout.root.iterdir()), [])
        # the network restart already took the link down
        self.assertNotIn("wg0", self.system.running)
        self.assertFalse(result.link_deleted)
        self.assertTrue(self.system.ran("/etc/init.d/firewall", "restart"))
        self.assertEqual(result.summary, "WireGuard uninstalled and cleaned up successfully.")

    def test_live_link_deleted_when_restart_fails(self):
        self.system.failing_services.add("network")
        with self.assertLogs("wg_openwrt.context", level="WARNING"):
            result = uninstall(self.ctx())
        self.assertTrue(result.link_deleted)
        self.assertTrue(self.system.ran("ip", "link", "delete", "wg0"))
        self.assertEqual(list(self.system.uci.committed["network"]), ["lan"])

    def test_declined(self):
        committed = copy.deepcopy(self.system.uci.committed)
        self.assertIsNone(uninstall(self.ctx(answer=False)))
        self.assertEqual(self.system.uci.committed, committed)
        self.assertTrue(self.layout.server_private.is_file())

    def test_nothing_installed(self):
        with tempfile.TemporaryDirectory() as tmp:
            system = FakeSystem()
            ctx = make_context(Path(tmp), system, confirm=lambda q, d: True)
            result = uninstall(ctx)
        self.assertEqual(result.network_sections, [])
        self.assertEqual(result.firewall_sections, [])
        self.assertFalse(system.ran("uci", "batch"))
        self.assertFalse(result.link_deleted)


if __name__ == "__main__":
    unittest.main()
