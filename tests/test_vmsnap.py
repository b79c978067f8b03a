# Copyright Red Hat
#
# tests/test_vmsnap.py - vmsnap package unit tests
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging
from datetime import datetime

import vmsnap
import vmsnap._vmsnap

log = logging.getLogger()


class VmsnapTestsSimple(unittest.TestCase):
    """Test vmsnap module"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)

    def test_parse_guest_token_with_label(self):
        token = vmsnap.parse_guest_token("guest@label")
        self.assertEqual(token.name, "guest")
        self.assertEqual(token.label, "label")
        self.assertEqual(str(token), "guest@label")

    def test_parse_guest_token_no_label(self):
        token = vmsnap.parse_guest_token("guest")
        self.assertEqual(token.name, "guest")
        self.assertIsNone(token.label)
        self.assertEqual(str(token), "guest")

    def test_parse_guest_token_first_separator_only(self):
        token = vmsnap.parse_guest_token("guest@2024-01-01@extra")
        self.assertEqual(token.name, "guest")
        self.assertEqual(token.label, "2024-01-01@extra")

    def test_parse_guest_token_timestamp_label(self):
        token = vmsnap.parse_guest_token("web1@2024-03-05-10:20:30")
        self.assertEqual(token.label, "2024-03-05-10:20:30")

    def test_parse_guest_token_bad_raises(self):
        bad_tokens = ["", "@label", "@", "guest@"]
        for bad in bad_tokens:
            with self.subTest(token=bad):
                with self.assertRaises(vmsnap.VmsnapInvalidTokenError):
                    vmsnap.parse_guest_token(bad)

    def test_parse_guest_token_is_usage_error(self):
        with self.assertRaises(vmsnap.VmsnapArgumentError):
            vmsnap.parse_guest_token("@label")

    def test_parse_guest_token_require_label(self):
        with self.assertRaises(vmsnap.VmsnapInvalidTokenError):
            vmsnap.parse_guest_token("guest", require_label=True)
        token = vmsnap.parse_guest_token("guest@a", require_label=True)
        self.assertEqual(token.label, "a")

    def test_validate_guest_name(self):
        for name in ["web1", "db-2", "guest_3", "a.b"]:
            with self.subTest(name=name):
                vmsnap.validate_guest_name(name)

    def test_validate_guest_name_bad_raises(self):
        for name in ["", "-web", ".hidden", "web/1", "web@1", "web 1"]:
            with self.subTest(name=name):
                with self.assertRaises(vmsnap.VmsnapArgumentError):
                    vmsnap.validate_guest_name(name)

    def test_snapshot_label(self):
        now = datetime(2024, 1, 2, 3, 4, 5)
        self.assertEqual(vmsnap.snapshot_label(now), "2024-01-02-03:04:05")

    def test_snapshot_label_now(self):
        label = vmsnap.snapshot_label()
        self.assertEqual(
            datetime.strptime(label, vmsnap.SNAPSHOT_LABEL_FORMAT).strftime(
                vmsnap.SNAPSHOT_LABEL_FORMAT
            ),
            label,
        )

    def test_split_options(self):
        self.assertEqual(
            vmsnap.split_options("compression=lz4  recordsize=64k"),
            ["compression=lz4", "recordsize=64k"],
        )

    def test_split_options_empty(self):
        self.assertEqual(vmsnap.split_options(""), [])
        self.assertEqual(vmsnap.split_options(None), [])

    def test_split_options_malformed_raises(self):
        for bad in ["compression", "=lz4", "a=b c"]:
            with self.subTest(options=bad):
                with self.assertRaises(vmsnap.VmsnapArgumentError):
                    vmsnap.split_options(bad)

    def test_storage_backend_dataset_and_path(self):
        backend = vmsnap.StorageBackend(True, "zroot/vm", "/vm")
        self.assertEqual(backend.dataset("web1"), "zroot/vm/web1")
        self.assertEqual(backend.dataset(""), "zroot/vm")
        self.assertEqual(backend.path("web1", "web1.conf"), "/vm/web1/web1.conf")

    def test_storage_backend_disabled_str(self):
        backend = vmsnap.StorageBackend(False, "", "/vm")
        self.assertEqual(str(backend), "directory:/vm")

    def test_snapshot_name(self):
        snapshot = vmsnap.Snapshot("web1", "a")
        self.assertEqual(snapshot.name, "web1@a")
        self.assertTrue(snapshot.recursive)

    def test_image_str(self):
        image = vmsnap.Image(
            "1234", "web1", "1234.zfs.zst", created=datetime(2024, 1, 2, 3, 4, 5)
        )
        self.assertIn("2024-01-02 03:04:05", str(image))
        self.assertIn(vmsnap.DEFAULT_IMAGE_DESCRIPTION, str(image))

    def test_clone_operation_str(self):
        op = vmsnap.CloneOperation(
            "web1", "a", "web2", [("zroot/vm/web1", "zroot/vm/web2")]
        )
        self.assertIn("zroot/vm/web1 -> zroot/vm/web2", str(op))

    def test_set_debug_mask(self):
        self.addCleanup(vmsnap.set_debug_mask, 0)
        vmsnap.set_debug_mask(vmsnap.VMSNAP_DEBUG_MANAGER | vmsnap.VMSNAP_DEBUG_IMAGES)
        self.assertEqual(
            vmsnap.get_debug_mask(),
            vmsnap.VMSNAP_DEBUG_MANAGER | vmsnap.VMSNAP_DEBUG_IMAGES,
        )

    def test_set_debug_mask_bad_raises(self):
        with self.assertRaises(ValueError):
            vmsnap.set_debug_mask(vmsnap.VMSNAP_DEBUG_ALL + 1)
        with self.assertRaises(ValueError):
            vmsnap.set_debug_mask(-1)

    def test_subsystem_filter(self):
        filt = vmsnap.SubsystemFilter("vmsnap")
        filt.set_debug_subsystems([vmsnap.VMSNAP_SUBSYSTEM_BACKEND])
        record = logging.LogRecord("vmsnap", logging.DEBUG, "", 0, "msg", (), None)
        self.assertTrue(filt.filter(record))
        record.subsystem = vmsnap.VMSNAP_SUBSYSTEM_BACKEND
        self.assertTrue(filt.filter(record))
        record.subsystem = vmsnap.VMSNAP_SUBSYSTEM_IMAGES
        self.assertFalse(filt.filter(record))
        record.levelno = logging.INFO
        self.assertTrue(filt.filter(record))
