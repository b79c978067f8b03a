# Copyright Red Hat
#
# tests/test_clone.py - Clone engine tests
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging
from os.path import exists, isdir

log = logging.getLogger()

from vmsnap import (
    VmsnapArgumentError,
    VmsnapCloneError,
    VmsnapExistsError,
    VmsnapGuestStateError,
    VmsnapNotFoundError,
    VmsnapSnapshotMissingError,
)
from vmsnap.manager._clone import map_dataset
from vmsnap.manager._guests import MAC_PREFIX, GuestConfig

from ._util import WEB1_MACS, WEB1_UUID, FakeCowTestBase, make_guest, read_file


class MapDatasetTests(unittest.TestCase):
    """Test source to target dataset mapping"""

    def test_map_dataset(self):
        cases = (
            ("zroot/vm/web1", "zroot/vm/web2"),
            ("zroot/vm/web1/disk0", "zroot/vm/web2/disk0"),
            ("zroot/vm/web1/data/disk1", "zroot/vm/web2/data/disk1"),
        )
        for source, expected in cases:
            with self.subTest(source=source):
                self.assertEqual(map_dataset(source, "zroot/vm", "web1", "web2"), expected)

    def test_map_dataset_only_replaces_guest_segment(self):
        self.assertEqual(
            map_dataset("zroot/vm/web1/web1", "zroot/vm", "web1", "db"),
            "zroot/vm/db/web1",
        )

    def test_map_dataset_outside_tree_raises(self):
        with self.assertRaises(ValueError):
            map_dataset("zroot/vm/web10", "zroot/vm", "web1", "web2")


class CloneTests(FakeCowTestBase):
    """Test guest cloning"""

    def setUp(self):
        super().setUp()
        make_guest(self.plugin, "web1")

    def _config(self, name):
        return GuestConfig.load(self.guest_path(name, f"{name}.conf"))

    def test_clone_scenario(self):
        snapshot = self.manager.create_snapshot("web1")
        operation = self.manager.clone(f"web1@{snapshot.label}", "web2")

        self.assertEqual(operation.source_label, snapshot.label)
        self.assertTrue(isdir(self.guest_path("web2")))
        self.assertTrue(exists(self.guest_path("web2", "web2.conf")))
        self.assertFalse(exists(self.guest_path("web2", "web1.conf")))
        self.assertNotEqual(self._config("web2").uuid, self._config("web1").uuid)
        self.assertEqual(self._config("web1").uuid, WEB1_UUID)

    def test_clone_maps_every_dataset(self):
        operation = self.manager.clone("web1", "web2")
        self.assertEqual(
            operation.dataset_mapping,
            [
                ("pool/vm/web1", "pool/vm/web2"),
                ("pool/vm/web1/disk0", "pool/vm/web2/disk0"),
            ],
        )
        self.assertIn("pool/vm/web2/disk0", self.plugin.volumes)
        self.assertEqual(
            read_file(self.guest_path("web2", "disk0", "data")),
            read_file(self.guest_path("web1", "disk0", "data")),
        )

    def test_clone_regenerates_macs(self):
        self.manager.clone("web1", "web2")
        source = self._config("web1")
        target = self._config("web2")
        for index in source.network_interfaces():
            with self.subTest(index=index):
                key = f"network{index}_mac"
                self.assertNotEqual(target.get(key), source.get(key))
                self.assertTrue(target.get(key).startswith(MAC_PREFIX))
        self.assertEqual(len(set(target.mac_addresses()) | set(WEB1_MACS)), 4)

    def test_clone_preserves_other_config(self):
        self.manager.clone("web1", "web2")
        target = self._config("web2")
        self.assertEqual(target.get("memory"), "1G")
        self.assertEqual(target.get("network1_type"), "virtio-net")

    def test_clone_removes_log_file(self):
        self.manager.clone("web1", "web2")
        self.assertTrue(exists(self.guest_path("web1", "vmsnap.log")))
        self.assertFalse(exists(self.guest_path("web2", "vmsnap.log")))

    def test_clone_without_label_takes_snapshot(self):
        operation = self.manager.clone("web1", "web2")
        self.assertEqual(len(operation.source_label), 8)
        self.assertEqual(self.manager.list_snapshots("web1"), [operation.source_label])
        self.assertEqual(
            self.plugin.origins["pool/vm/web2"], f"pool/vm/web1@{operation.source_label}"
        )

    def test_clone_without_label_running_raises(self):
        self.set_running("web1")
        with self.assertRaises(VmsnapGuestStateError):
            self.manager.clone("web1", "web2")
        self.assertFalse(exists(self.guest_path("web2")))

    def test_clone_with_label_running_allowed(self):
        self.manager.create_snapshot("web1@a")
        self.set_running("web1")
        self.manager.clone("web1@a", "web2")
        self.assertTrue(exists(self.guest_path("web2", "web2.conf")))

    def test_clone_target_exists_raises(self):
        make_guest(self.plugin, "web2")
        with self.assertRaises(VmsnapExistsError):
            self.manager.clone("web1", "web2")

    def test_clone_source_missing_raises(self):
        with self.assertRaises(VmsnapNotFoundError):
            self.manager.clone("nope", "web2")

    def test_clone_bad_target_name_raises(self):
        with self.assertRaises(VmsnapArgumentError):
            self.manager.clone("web1", "web/2")

    def test_clone_snapshot_missing_names_dataset(self):
        self.manager.create_snapshot("web1@a")
        self.plugin.destroy_snapshot("pool/vm/web1/disk0", "a", recursive=False)
        with self.assertRaises(VmsnapSnapshotMissingError) as cm:
            self.manager.clone("web1@a", "web2")
        self.assertIn("pool/vm/web1/disk0", str(cm.exception))
        self.assertNotIn("pool/vm/web2", self.plugin.datasets)

    def test_clone_failure_leaves_partial_target(self):
        self.plugin.fail_clone.add("pool/vm/web1/disk0")
        with self.assertRaises(VmsnapCloneError) as cm:
            self.manager.clone("web1", "web2")
        self.assertIn("out of space", str(cm.exception))
        self.assertIn("pool/vm/web2", self.plugin.datasets)
        self.assertNotIn("pool/vm/web2/disk0", self.plugin.datasets)

    def test_clone_twice_unique_macs(self):
        self.manager.clone("web1", "web2")
        self.manager.clone("web1", "web3")
        macs = (
            self._config("web1").mac_addresses()
            + self._config("web2").mac_addresses()
            + self._config("web3").mac_addresses()
        )
        self.assertEqual(len(macs), len(set(macs)))

    def test_clone_config_rename_failure_raises(self):
        snapshot = self.manager.create_snapshot("web1@a")
        # Drop the configuration from the snapshot so the clone has none
        self.plugin.snapshots["pool/vm/web1"][0][1].pop("web1.conf")
        with self.assertRaises(VmsnapCloneError):
            self.manager.clone(f"web1@{snapshot.label}", "web2")
