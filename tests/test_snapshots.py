# Copyright Red Hat
#
# tests/test_snapshots.py - Snapshot manager tests
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
from datetime import datetime
import logging

log = logging.getLogger()

from vmsnap import (
    SNAPSHOT_LABEL_FORMAT,
    VmsnapBackendRequiredError,
    VmsnapCalloutError,
    VmsnapGuestStateError,
    VmsnapInvalidTokenError,
    VmsnapNotAGuestError,
    VmsnapSnapshotError,
    VmsnapSnapshotMissingError,
    StorageBackend,
)
from vmsnap.manager import GuestState
from vmsnap.manager._snapshots import Snapshots

from ._util import FakeCowTestBase, make_guest, read_file


class SnapshotsTests(FakeCowTestBase):
    """Test recursive guest snapshots"""

    def setUp(self):
        super().setUp()
        make_guest(self.plugin, "web1")

    def _write_conf(self, data):
        with open(self.guest_path("web1", "web1.conf"), "w", encoding="utf8") as fp:
            fp.write(data)

    def test_create_snapshot_with_label(self):
        snapshot = self.manager.create_snapshot("web1@first")
        self.assertEqual(snapshot.name, "web1@first")
        for dataset in ["pool/vm/web1", "pool/vm/web1/disk0"]:
            with self.subTest(dataset=dataset):
                self.assertTrue(self.plugin.snapshot_exists(dataset, "first"))

    def test_create_snapshot_default_label(self):
        now = datetime(2024, 5, 6, 7, 8, 9)
        with patch("vmsnap._vmsnap.datetime") as mock_datetime:
            mock_datetime.now.return_value = now
            snapshot = self.manager.create_snapshot("web1")
        self.assertEqual(snapshot.label, "2024-05-06-07:08:09")
        self.assertEqual(self.manager.list_snapshots("web1"), ["2024-05-06-07:08:09"])

    def test_create_snapshot_label_is_timestamp(self):
        snapshot = self.manager.create_snapshot("web1")
        datetime.strptime(snapshot.label, SNAPSHOT_LABEL_FORMAT)

    def test_create_snapshot_not_a_guest_raises(self):
        with self.assertRaises(VmsnapNotAGuestError):
            self.manager.create_snapshot("nope@a")

    def test_create_snapshot_running_raises(self):
        self.set_running("web1")
        with self.assertRaises(VmsnapGuestStateError):
            self.manager.create_snapshot("web1@a")
        self.assertEqual(self.manager.list_snapshots("web1"), [])

    def test_create_snapshot_running_force(self):
        self.set_running("web1")
        self.manager.create_snapshot("web1@a", force=True)
        self.assertEqual(self.manager.list_snapshots("web1"), ["a"])

    def test_create_snapshot_duplicate_raises(self):
        self.manager.create_snapshot("web1@a")
        with self.assertRaises(VmsnapSnapshotError):
            self.manager.create_snapshot("web1@a")

    def test_create_snapshot_bad_token_raises(self):
        with self.assertRaises(VmsnapInvalidTokenError):
            self.manager.create_snapshot("@a")

    def test_create_snapshot_backend_disabled_raises(self):
        snapshots = Snapshots(StorageBackend(False, "", self.guest_path()), GuestState(self.vmm_dir))
        with self.assertRaises(VmsnapBackendRequiredError):
            snapshots.create("web1@a")

    def test_list_dataset_tree(self):
        self.assertEqual(
            self.manager.snapshots.list_dataset_tree("web1"),
            ["pool/vm/web1", "pool/vm/web1/disk0"],
        )

    def test_list_snapshots_ordered(self):
        for label in ["c", "a", "b"]:
            self.manager.create_snapshot(f"web1@{label}")
        self.assertEqual(self.manager.list_snapshots("web1"), ["c", "a", "b"])

    def test_destroy_snapshot(self):
        self.manager.create_snapshot("web1@a")
        self.manager.destroy_snapshot("web1@a")
        self.assertEqual(self.manager.list_snapshots("web1"), [])
        self.assertFalse(self.plugin.snapshot_exists("pool/vm/web1/disk0", "a"))

    def test_destroy_snapshot_requires_label(self):
        with self.assertRaises(VmsnapInvalidTokenError):
            self.manager.destroy_snapshot("web1")

    def test_destroy_snapshot_missing_raises(self):
        with self.assertRaises(VmsnapSnapshotMissingError):
            self.manager.destroy_snapshot("web1@nope")

    def test_rollback_restores_contents(self):
        conf_path = self.guest_path("web1", "web1.conf")
        original = read_file(conf_path)
        self.manager.create_snapshot("web1@a")
        self._write_conf('uuid="changed"\n')
        self.manager.rollback("web1@a")
        self.assertEqual(read_file(conf_path), original)

    def test_rollback_requires_label(self):
        with self.assertRaises(VmsnapInvalidTokenError):
            self.manager.rollback("web1")

    def test_rollback_running_raises_even_with_force(self):
        self.manager.create_snapshot("web1@a")
        self.set_running("web1")
        for force in (False, True):
            with self.subTest(force=force):
                with self.assertRaises(VmsnapGuestStateError):
                    self.manager.rollback("web1@a", force=force)

    def test_rollback_not_a_guest_raises(self):
        with self.assertRaises(VmsnapNotAGuestError):
            self.manager.rollback("nope@a")

    def test_rollback_newer_snapshots_fails_verbatim(self):
        self.manager.create_snapshot("web1@a")
        self.manager.create_snapshot("web1@b")
        with self.assertRaises(VmsnapCalloutError) as cm:
            self.manager.rollback("web1@a")
        message = str(cm.exception)
        self.assertTrue(message.startswith("cannot rollback to 'pool/vm/web1@a'"))
        self.assertIn("pool/vm/web1@b", message)
        self.assertEqual(self.manager.list_snapshots("web1"), ["a", "b"])

    def test_rollback_newer_snapshots_force(self):
        conf_path = self.guest_path("web1", "web1.conf")
        original = read_file(conf_path)
        self.manager.create_snapshot("web1@a")
        self._write_conf('uuid="changed"\n')
        self.manager.create_snapshot("web1@b")
        self.manager.rollback("web1@a", force=True)
        self.assertEqual(self.manager.list_snapshots("web1"), ["a"])
        self.assertEqual(self.plugin.list_snapshots("pool/vm/web1/disk0"), ["a"])
        self.assertEqual(read_file(conf_path), original)

    def test_rollback_missing_on_child_raises_before_rollback(self):
        self.manager.create_snapshot("web1@a")
        self._write_conf('uuid="changed"\n')
        self.plugin.destroy_snapshot("pool/vm/web1/disk0", "a", recursive=False)
        with self.assertRaises(VmsnapSnapshotMissingError) as cm:
            self.manager.rollback("web1@a")
        self.assertIn("pool/vm/web1/disk0@a", str(cm.exception))
        self.assertEqual(read_file(self.guest_path("web1", "web1.conf")), b'uuid="changed"\n')

    def test_rollback_failure_stops_at_first_dataset(self):
        self.manager.create_snapshot("web1@a")
        calls = []

        def failing_rollback(dataset, label, destroy_newer=False):
            calls.append(dataset)
            raise VmsnapCalloutError(f"cannot rollback '{dataset}': dataset is busy")

        with patch.object(self.plugin, "rollback", side_effect=failing_rollback):
            with self.assertRaises(VmsnapCalloutError) as cm:
                self.manager.rollback("web1@a")
        self.assertEqual(calls, ["pool/vm/web1"])
        self.assertEqual(str(cm.exception), "cannot rollback 'pool/vm/web1': dataset is busy")


if __name__ == "__main__":
    unittest.main()
