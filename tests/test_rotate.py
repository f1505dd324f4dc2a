# tests/test_rotate.py
import tempfile
import unittest
from pathlib import Path
from unittest import TestCase, mock

from fakes import FakeSystem, fake_pubkey, install_server, make_context
from wg_openwrt import peers
from wg_openwrt.errors import BackupFailure, CommitFailure, JournalCorrupt, NotFoundError, ValidationError
from wg_openwrt.keydir import BackupPolicy, read_key, write_server_keys
from wg_openwrt.profile import parse_profile, profile_field, replace_server_key
from wg_openwrt.rotate import rotate
from wg_openwrt.state import RotationJournal, load_journal, save_journal


def snapshot(root: Path) -> dict:
    return {p: p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


class RotateTestCase(TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.system = FakeSystem()
        self.ctx = make_context(self.tmp, self.system)
        self.layout = self.ctx.layout
        self.old_pub = install_server(self.system, self.layout)
        peers.add_peer(self.new_ctx(), "laptop", endpoint="vpn.example.org:443", dns="1.1.1.1")
        peers.add_peer(self.new_ctx(), "phone")

    def tearDown(self):
        self._tmp.cleanup()

    def new_ctx(self, **kw):
        return make_context(self.tmp, self.system, layout=self.layout, **kw)

    def server_key_in(self, name):
        return profile_field(self.layout.peer_conf(name).read_text(), "Peer", "PublicKey")


class TestServerRotation(RotateTestCase):
    def test_cascade_updates_every_profile(self):
        result = rotate(self.new_ctx(), server=True)
        new_pub = result.server_public_key

        self.assertNotEqual(new_pub, self.old_pub)
        self.assertEqual(read_key(self.layout.server_public), new_pub)
        private_key = read_key(self.layout.server_private)
        self.assertEqual(fake_pubkey(private_key), new_pub)
        self.assertEqual(self.system.uci.committed["network"]["wg0"]["options"]["private_key"],
                         [private_key])

        for conf in self.layout.profiles():
            with self.subTest(profile=conf.name):
                text = conf.read_text()
                self.assertEqual(profile_field(text, "Peer", "PublicKey"), new_pub)
                self.assertNotIn(self.old_pub, text)
        self.assertEqual(sorted(result.patched), ["laptop", "phone"])
        self.assertFalse(self.layout.journal.exists())
        self.assertEqual(list(self.layout.root.glob("*.new")), [])

        backed_up = {p.name for p in result.backup_dir.iterdir()}
        self.assertEqual(backed_up, {"privatekey", "publickey", "laptop.conf", "phone.conf"})
        self.assertEqual(read_key(result.backup_dir / "publickey"), self.old_pub)

        self.assertTrue(result.reloaded)
        self.assertTrue(result.running)

    def test_commit_failure_keeps_old_keys(self):
        before_profiles = {p.name: p.read_text() for p in self.layout.profiles()}
        self.system.uci.fail_commit.add("network")
        with self.assertRaises(CommitFailure):
            rotate(self.new_ctx(), server=True)
        self.assertEqual(read_key(self.layout.server_public), self.old_pub)
        self.assertEqual(list(self.layout.root.glob("*.new")), [])
        self.assertEqual({p.name: p.read_text() for p in self.layout.profiles()}, before_profiles)
        self.assertFalse(self.layout.journal.exists())

    def test_interrupted_cascade_is_resumed(self):
        new_priv = "bmV3LXByaXZhdGUta2V5LTAwMDAwMDAwMDAwMDAwMDA="
        new_pub = fake_pubkey(new_priv)
        write_server_keys(self.layout, new_priv, new_pub)
        laptop = self.layout.peer_conf("laptop")
        laptop.write_text(replace_server_key(laptop.read_text(), new_pub))
        save_journal(RotationJournal(new_public_key=new_pub, started="20250101-000000",
                                     pending=["laptop", "phone"]), self.layout.journal)

        # no explicit target: the unfinished cascade alone is reason to run
        result = rotate(self.new_ctx())
        self.assertEqual(result.resumed, ["laptop", "phone"])
        self.assertEqual(self.server_key_in("laptop"), new_pub)
        self.assertEqual(self.server_key_in("phone"), new_pub)
        self.assertIsNone(load_journal(self.layout.journal))
        self.assertIsNone(result.reloaded)

    def test_crash_after_commit_is_resumed(self):
        original_private = read_key(self.layout.server_private)
        with mock.patch("wg_openwrt.keydir.promote", side_effect=KeyboardInterrupt):
            with self.assertRaises(KeyboardInterrupt):
                rotate(self.new_ctx(), server=True)

        journal = load_journal(self.layout.journal)
        self.assertIsNotNone(journal)
        self.assertEqual(sorted(journal.pending), ["laptop", "phone"])
        committed = self.system.uci.committed["network"]["wg0"]["options"]["private_key"][0]
        self.assertNotEqual(committed, original_private)

        with self.assertLogs("wg_openwrt.rotate", level="WARNING"):
            result = rotate(self.new_ctx())
        self.assertEqual(sorted(result.resumed), ["laptop", "phone"])
        self.assertEqual(read_key(self.layout.server_private), committed)
        self.assertEqual(read_key(self.layout.server_public), journal.new_public_key)
        self.assertEqual(fake_pubkey(committed), journal.new_public_key)
        self.assertEqual(self.server_key_in("laptop"), journal.new_public_key)
        self.assertEqual(self.server_key_in("phone"), journal.new_public_key)
        self.assertEqual(list(self.layout.root.glob("*.new")), [])
        self.assertFalse(self.layout.journal.exists())

    def test_crash_before_commit_keeps_old_keys(self):
        original_private = read_key(self.layout.server_private)
        with mock.patch("wg_openwrt.uci.UciStore.commit", side_effect=KeyboardInterrupt):
            with self.assertRaises(KeyboardInterrupt):
                rotate(self.new_ctx(), server=True)
        self.assertTrue(self.layout.journal.exists())

        with self.assertLogs("wg_openwrt.rotate", level="WARNING"):
            result = rotate(self.new_ctx())
        self.assertEqual(result.resumed, [])
        self.assertEqual(read_key(self.layout.server_private), original_private)
        self.assertEqual(read_key(self.layout.server_public), self.old_pub)
        self.assertEqual(self.server_key_in("laptop"), self.old_pub)
        self.assertEqual(list(self.layout.root.glob("*.new")), [])
        self.assertFalse(self.layout.journal.exists())

    def test_corrupt_journal_stops_before_changes(self):
        self.layout.journal.write_text("{not json")
        before = snapshot(self.layout.peers)
        with self.assertRaises(JournalCorrupt):
            rotate(self.new_ctx(), peers=["laptop"])
        self.assertEqual(snapshot(self.layout.peers), before)

    def test_stale_journal_is_discarded(self):
        save_journal(RotationJournal(new_public_key="c3RhbGU=", started="20250101-000000",
                                     pending=["laptop"]), self.layout.journal)
        with self.assertLogs("wg_openwrt.rotate", level="WARNING"):
            result = rotate(self.new_ctx(), peers=["phone"])
        self.assertEqual(result.resumed, [])
        self.assertEqual(self.server_key_in("laptop"), self.old_pub)
        self.assertFalse(self.layout.journal.exists())


class TestPeerRotation(RotateTestCase):
    def test_peer_keys_replaced_profile_settings_kept(self):
        old_section = self.system.uci.committed["network"]["wireguard_wg0_laptop"]["options"]
        old_key = old_section["public_key"][0]

        result = rotate(self.new_ctx(), peers=["laptop"])
        self.assertEqual([p.name for p in result.peers], ["laptop"])
        new_key = result.peers[0].public_key
        self.assertNotEqual(new_key, old_key)

        section = self.system.uci.committed["network"]["wireguard_wg0_laptop"]["options"]
        self.assertEqual(section["public_key"], [new_key])
        self.assertEqual(section["allowed_ips"], ["192.168.20.2/32"])

        parsed = parse_profile(self.layout.peer_conf("laptop").read_text())
        self.assertEqual(parsed["Peer"]["Endpoint"], "vpn.example.org:443")
        self.assertEqual(parsed["Interface"]["DNS"], "1.1.1.1")
        self.assertEqual(parsed["Peer"]["PublicKey"], self.old_pub)
        self.assertEqual(self.layout.peer_public("laptop").read_text(), new_key)
        self.assertIsNone(result.server_public_key)

    def test_missing_profile_gets_defaults(self):
        self.layout.peer_conf("phone").unlink()
        rotate(self.new_ctx(), peers=["phone"])
        parsed = parse_profile(self.layout.peer_conf("phone").read_text())
        self.assertEqual(parsed["Peer"]["Endpoint"], "your.host:51820")
        self.assertEqual(parsed["Interface"]["DNS"], "192.168.20.1")

    def test_all_peers(self):
        result = rotate(self.new_ctx(), all_peers=True)
        self.assertEqual([p.name for p in result.peers], ["laptop", "phone"])

    def test_unknown_peer_touches_nothing(self):
        before = snapshot(self.layout.root)
        batches = len(self.system.uci.batches)
        with self.assertRaises(NotFoundError):
            rotate(self.new_ctx(), peers=["laptop", "ghost"])
        self.assertEqual(snapshot(self.layout.root), before)
        self.assertFalse(self.layout.backup.exists())
        self.assertEqual(len(self.system.uci.batches), batches)

    def test_no_target(self):
        with self.assertRaises(ValidationError):
            rotate(self.new_ctx())

    def test_bad_endpoint_rejected_before_changes(self):
        before = snapshot(self.layout.root)
        with self.assertRaises(ValidationError):
            rotate(self.new_ctx(), all_peers=True, endpoint="vpn.example.org\nPostUp = id")
        self.assertEqual(snapshot(self.layout.root), before)


class TestBackupPolicy(RotateTestCase):
    def setUp(self):
        super().setUp()
        # a plain file where the backup directory should go
        self.layout.backup.write_text("not a directory")

    def test_required_backup_aborts(self):
        before = snapshot(self.layout.peers)
        with self.assertRaises(BackupFailure):
            rotate(self.new_ctx(), peers=["laptop"])
        self.assertEqual(snapshot(self.layout.peers), before)

    def test_best_effort_continues(self):
        ctx = self.new_ctx(backup_policy=BackupPolicy.BEST_EFFORT)
        with self.assertLogs("wg_openwrt.keydir", level="WARNING"):
            result = rotate(ctx, peers=["laptop"])
        self.assertIsNone(result.backup_dir)
        self.assertEqual(len(result.peers), 1)

    def test_disabled_backup(self):
        result = rotate(self.new_ctx(backup_policy=BackupPolicy.DISABLED), peers=["laptop"])
        self.assertIsNone(result.backup_dir)
        self.assertEqual(len(result.peers), 1)


if __name__ == "__main__":
    unittest.main()
