# tests/test_cli.py
import contextlib
import functools
import io
import tempfile
import unittest
from pathlib import Path
from unittest import TestCase, mock

import wgtool
from fakes import FakeSystem, install_server, make_layout
from wg_openwrt.context import Context


class CliTestCase(TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.system = FakeSystem()
        self.layout = make_layout(self.tmp)
        patches = [
            mock.patch("wgtool.Context", functools.partial(Context, layout=self.layout, run=self.system)),
            mock.patch("wgtool.require_tools"),
            mock.patch("wgtool.LOGFILE", self.tmp / "wg-setup.log"),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def tearDown(self):
        self._tmp.cleanup()

    def run_main(self, main, *argv, stdin=None):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            if stdin is None:
                code = main(list(argv))
            else:
                with mock.patch("builtins.input", side_effect=stdin):
                    code = main(list(argv))
        return code, out.getvalue(), err.getvalue()


class TestExitCodes(CliTestCase):
    def test_help_exits_zero(self):
        for main in (wgtool.install_main, wgtool.peer_main, wgtool.rotate_main, wgtool.uninstall_main):
            with self.subTest(main=main.__name__):
                with self.assertRaises(SystemExit) as cm:
                    self.run_main(main, "--help")
                self.assertEqual(cm.exception.code, 0)

    def test_unknown_option_exits_one(self):
        for main in (wgtool.install_main, wgtool.peer_main, wgtool.rotate_main, wgtool.uninstall_main):
            with self.subTest(main=main.__name__):
                with self.assertRaises(SystemExit) as cm:
                    self.run_main(main, "--bogus")
                self.assertEqual(cm.exception.code, 1)

    def test_conflicting_backup_flags(self):
        with self.assertRaises(SystemExit) as cm:
            self.run_main(wgtool.rotate_main, "--server", "--no-backup", "--best-effort-backup")
        self.assertEqual(cm.exception.code, 1)

    def test_invalid_interface_name(self):
        code, _, err = self.run_main(wgtool.peer_main, "--list", "--interface", "wg0;reboot")
        self.assertEqual(code, 1)
        self.assertIn("[ERROR] Invalid interface name", err)

    def test_interface_missing(self):
        code, _, err = self.run_main(wgtool.peer_main, "--list")
        self.assertEqual(code, 1)
        self.assertIn("WireGuard interface 'wg0' not found in UCI configuration", err)


class TestRotateCli(CliTestCase):
    def setUp(self):
        super().setUp()
        install_server(self.system, self.layout)

    def test_ghost_peer(self):
        before = sorted(self.layout.root.rglob("*"))
        code, _, err = self.run_main(wgtool.rotate_main, "--peer=ghost", "--yes")
        self.assertEqual(code, 1)
        self.assertIn("[ERROR]", err)
        self.assertIn("ghost", err)
        self.assertEqual(sorted(self.layout.root.rglob("*")), before)

    def test_no_target(self):
        code, _, err = self.run_main(wgtool.rotate_main, "--yes")
        self.assertEqual(code, 1)
        self.assertIn("No rotation target specified", err)

    def test_corrupt_journal_reported(self):
        self.layout.journal.write_text("{not json")
        code, _, err = self.run_main(wgtool.rotate_main, "--yes")
        self.assertEqual(code, 1)
        self.assertIn("[ERROR] Rotation journal", err)

    def test_permission_denied_reported(self):
        denied = PermissionError(13, "Permission denied", str(self.layout.server_private))
        with mock.patch("wgtool.rotate", side_effect=denied):
            code, _, err = self.run_main(wgtool.rotate_main, "--server", "--yes")
        self.assertEqual(code, 1)
        self.assertIn("[ERROR]", err)
        self.assertIn("Permission denied", err)

    def test_server_rotation(self):
        code, out, _ = self.run_main(wgtool.rotate_main, "--server", "--yes", "--no-qr")
        self.assertEqual(code, 0)
        self.assertIn("New server public key", out)
        self.assertIn("WireGuard interface is running", out)


class TestPeerCli(CliTestCase):
    def setUp(self):
        super().setUp()
        install_server(self.system, self.layout)

    def test_add_list_disable(self):
        code, out, _ = self.run_main(wgtool.peer_main, "--add", "--name=laptop", "--yes", "--no-qr")
        self.assertEqual(code, 0)
        self.assertIn("Peer 'laptop' added successfully!", out)
        self.assertIn("Address = 192.168.20.2/32", out)
        self.assertTrue(self.layout.peer_conf("laptop").is_file())

        code, out, _ = self.run_main(wgtool.peer_main, "--disable=laptop", "--yes")
        self.assertEqual(code, 0)
        code, out, _ = self.run_main(wgtool.peer_main, "--list")
        self.assertEqual(code, 0)
        self.assertIn("1. laptop (192.168.20.2/32) [DISABLED]", out)

    def test_add_needs_a_name(self):
        code, _, err = self.run_main(wgtool.peer_main, "--add", "--yes")
        self.assertEqual(code, 1)
        self.assertIn("Peer name required", err)

    def test_remove_unknown(self):
        code, _, err = self.run_main(wgtool.peer_main, "--remove=ghost", "--yes")
        self.assertEqual(code, 1)
        self.assertIn("Peer 'ghost' not found", err)

    def test_traffic_when_down(self):
        code, _, err = self.run_main(wgtool.peer_main, "--traffic")
        self.assertEqual(code, 1)
        self.assertIn("is not running", err)

    def test_menu_list_then_exit(self):
        code, out, _ = self.run_main(wgtool.peer_main, "--no-clear", stdin=["1", "", "7"])
        self.assertEqual(code, 0)
        self.assertIn("WireGuard Peer Management", out)
        self.assertIn("No peers configured.", out)
        self.assertIn("Goodbye!", out)

    def test_menu_survives_errors(self):
        # add with an empty name, then exit
        code, out, err = self.run_main(wgtool.peer_main, "--no-clear",
                                       stdin=["2", "", "", "", "", "", "7"])
        self.assertEqual(code, 0)
        self.assertIn("[ERROR] Peer name required", err)

    def test_menu_end_of_input(self):
        code, _, _ = self.run_main(wgtool.peer_main, "--no-clear", stdin=EOFError())
        self.assertEqual(code, 0)


class TestInstallUninstallCli(CliTestCase):
    def test_install_then_dry_run_uninstall(self):
        code, out, _ = self.run_main(wgtool.install_main, "--yes", "--no-qr", "--peer=laptop",
                                     "--endpoint=vpn.example.org")
        self.assertEqual(code, 0)
        self.assertIn("WireGuard 'wg0' setup complete.", out)
        self.assertTrue((self.tmp / "wg-setup.log").is_file())

        committed = repr(self.system.uci.committed)
        code, out, _ = self.run_main(wgtool.uninstall_main, "--dry-run", "--yes")
        self.assertEqual(code, 0)
        self.assertIn("Dry-run complete. No changes were made.", out)
        self.assertEqual(repr(self.system.uci.committed), committed)
        self.assertTrue(self.layout.peer_conf("laptop").is_file())

    def test_uninstall_declined(self):
        code, out, _ = self.run_main(wgtool.uninstall_main, stdin=["n"])
        self.assertEqual(code, 0)
        self.assertIn("Aborted.", out)

    def test_rollback_unknown(self):
        code, _, err = self.run_main(wgtool.install_main, "--rollback=19990101-000000", "--yes")
        self.assertEqual(code, 1)
        self.assertIn("Backup not found", err)

    def test_bad_port(self):
        code, _, err = self.run_main(wgtool.install_main, "--yes", "--port=99999")
        self.assertEqual(code, 1)
        self.assertIn("Listen port out of range", err)


class TestHelpers(TestCase):
    def test_human_bytes(self):
        self.assertEqual(wgtool.human_bytes(512), "512 B")
        self.assertEqual(wgtool.human_bytes(2048), "2.00 KiB")
        self.assertEqual(wgtool.human_bytes(3 * 1024 ** 3), "3.00 GiB")

    def test_confirm_defaults(self):
        confirm = wgtool.make_confirm(False)
        with mock.patch("builtins.input", return_value=""):
            self.assertTrue(confirm("Restart?", True))
            self.assertFalse(confirm("Remove?", False))
        with mock.patch("builtins.input", return_value="Yes"):
            self.assertTrue(confirm("Remove?", False))
        self.assertTrue(wgtool.make_confirm(True)("Remove?", False))


if __name__ == "__main__":
    unittest.main()
