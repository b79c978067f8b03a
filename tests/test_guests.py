# Copyright Red Hat
#
# tests/test_guests.py - Guest configuration and identity tests
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging
import random
import shutil
import tempfile
import os
from os.path import join

log = logging.getLogger()

from vmsnap import (
    VmsnapArgumentError,
    VmsnapGuestStateError,
    VmsnapNotAGuestError,
    VmsnapNotFoundError,
    StorageBackend,
)
from vmsnap.manager._guests import (
    MAC_PREFIX,
    GuestConfig,
    GuestState,
    KeyValueFile,
    MacGenerator,
    check_guest_exists,
    guest_exists,
    list_guests,
    load_guest_config,
)

from ._util import WEB1_MACS, WEB1_UUID, write_guest_config


class GuestsTests(unittest.TestCase):
    """Test guest configuration collaborators"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tmp_dir = tempfile.mkdtemp(prefix="vmsnap_test_")
        self.addCleanup(shutil.rmtree, self._tmp_dir, ignore_errors=True)
        self.backend = StorageBackend(False, "", self._tmp_dir)

    def _make_guest(self, name, uuid=WEB1_UUID, macs=None):
        os.makedirs(join(self._tmp_dir, name))
        path = join(self._tmp_dir, name, f"{name}.conf")
        write_guest_config(path, uuid, WEB1_MACS if macs is None else macs)
        return path

    def test_key_value_file_round_trip_preserves_lines(self):
        path = join(self._tmp_dir, "record")
        with open(path, "w", encoding="utf8") as fp:
            fp.write('# comment\nname="web1"\n\ncpu=2\n')
        record = KeyValueFile.load(path)
        self.assertEqual(record.get("name"), "web1")
        self.assertEqual(record.get("cpu"), "2")
        self.assertIsNone(record.get("memory"))
        record.set("name", "web2")
        record.set("memory", "1G")
        record.save()
        with open(path, "r", encoding="utf8") as fp:
            self.assertEqual(
                fp.read(), '# comment\nname="web2"\n\ncpu=2\nmemory="1G"\n'
            )

    def test_key_value_file_set_line_break_raises(self):
        record = KeyValueFile(join(self._tmp_dir, "record"))
        record.set("description", "web server")
        for value in ("web\nname=\"evil\"", "web\rserver"):
            with self.subTest(value=value):
                with self.assertRaises(VmsnapArgumentError):
                    record.set("description", value)
        self.assertEqual(record.get("description"), "web server")
        self.assertEqual(record.keys(), ["description"])

    def test_key_value_file_missing_raises(self):
        with self.assertRaises(OSError):
            KeyValueFile.load(join(self._tmp_dir, "nope"))

    def test_guest_config_fields(self):
        config = GuestConfig.load(self._make_guest("web1"))
        self.assertEqual(config.uuid, WEB1_UUID)
        self.assertEqual(list(config.network_interfaces()), [0, 1])
        self.assertEqual(sorted(config.mac_addresses()), sorted(WEB1_MACS))

    def test_guest_config_no_interfaces(self):
        config = GuestConfig.load(self._make_guest("web1", macs=[]))
        self.assertEqual(list(config.network_interfaces()), [])

    def test_guest_exists(self):
        self._make_guest("web1")
        os.makedirs(join(self._tmp_dir, "notaguest"))
        self.assertTrue(guest_exists(self.backend, "web1"))
        self.assertFalse(guest_exists(self.backend, "notaguest"))
        check_guest_exists(self.backend, "web1")
        with self.assertRaises(VmsnapNotAGuestError):
            check_guest_exists(self.backend, "notaguest")

    def test_list_guests(self):
        self._make_guest("web2")
        self._make_guest("web1")
        os.makedirs(join(self._tmp_dir, "images"))
        self.assertEqual(list_guests(self.backend), ["web1", "web2"])

    def test_load_guest_config_missing_raises(self):
        with self.assertRaises(VmsnapNotFoundError):
            load_guest_config(self.backend, "nope")

    def test_guest_state(self):
        vmm_dir = join(self._tmp_dir, "vmm")
        os.makedirs(vmm_dir)
        state = GuestState(vmm_dir)
        self.assertFalse(state.is_running("web1"))
        state.check_stopped("web1", "roll back")
        with open(join(vmm_dir, "web1"), "w", encoding="utf8"):
            pass
        self.assertTrue(state.is_running("web1"))
        with self.assertRaises(VmsnapGuestStateError):
            state.check_stopped("web1", "roll back")

    def test_mac_generator_prefix(self):
        mac = MacGenerator(self.backend).generate()
        self.assertTrue(mac.startswith(MAC_PREFIX + ":"))
        self.assertEqual(len(mac.split(":")), 6)

    def test_mac_generator_avoids_configured_addresses(self):
        first = MacGenerator(self.backend, rng=random.Random(42)).generate()
        self._make_guest("web1", macs=[first])
        second = MacGenerator(self.backend, rng=random.Random(42)).generate()
        self.assertNotEqual(first, second)

    def test_mac_generator_never_repeats(self):
        generator = MacGenerator(self.backend, rng=random.Random(7))
        macs = [generator.generate() for _ in range(64)]
        self.assertEqual(len(set(macs)), 64)

    def test_mac_generator_exhausted_raises(self):
        rng = random.Random()
        rng.randrange = lambda _: 1
        self._make_guest("web1", macs=[f"{MAC_PREFIX}:01:01:01"])
        with self.assertRaises(VmsnapNotFoundError):
            MacGenerator(self.backend, rng=rng).generate()
