# Copyright Red Hat
#
# vmsnap/manager/_guests.py - Guest configuration and identity
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Guest configuration files, power state and identity generation.

Guest configuration and image manifests share a flat ``key="value"``
record format, one assignment per line, as written by ``sysrc(8)``.
"""
from typing import Dict, Iterator, List, Optional, Tuple
from os.path import exists, isdir, join
import logging
import random
import re
import os

from vmsnap import (
    GUEST_CONFIG_SUFFIX,
    VmsnapArgumentError,
    VmsnapGuestStateError,
    VmsnapNotAGuestError,
    VmsnapNotFoundError,
    StorageBackend,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Guest configuration key for the guest UUID
GUEST_UUID = "uuid"

#: Guest network interface type key format
GUEST_NETWORK_TYPE = "network%d_type"

#: Guest network interface MAC address key format
GUEST_NETWORK_MAC = "network%d_mac"

#: Guest log file name inside the guest directory
GUEST_LOG_FILE = "vmsnap.log"

#: Organisationally unique identifier for generated MAC addresses
MAC_PREFIX = "58:9c:fc"

_MAC_KEY_RE = re.compile(r"^network[0-9]+_mac$")

# Give up looking for an unused MAC address after this many attempts
_MAC_MAX_ATTEMPTS = 1024


def check_record_value(value: str):
    """
    Check that ``value`` can be stored on a single record line.

    :raises: ``VmsnapArgumentError`` if ``value`` contains a line break.
    """
    if "\n" in value or "\r" in value:
        raise VmsnapArgumentError(f"Record values cannot contain line breaks: {value!r}")


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


class KeyValueFile:
    """
    A flat ``key="value"`` record file. Comments, blank lines and key order
    are preserved across ``load()`` and ``save()``.
    """

    def __init__(self, path: str):
        self.path = path
        self._lines: List[Tuple[Optional[str], str]] = []
        self._values: Dict[str, str] = {}

    @classmethod
    def load(cls, path: str) -> "KeyValueFile":
        """
        Load the record file at ``path``.

        :raises: ``OSError`` if the file cannot be read.
        """
        record = cls(path)
        with open(path, "r", encoding="utf8") as fp:
            for line in fp.read().splitlines():
                stripped = line.strip()
                if not stripped or stripped.startswith("#") or "=" not in stripped:
                    record._lines.append((None, line))
                    continue
                (key, _, value) = stripped.partition("=")
                key = key.strip()
                record._lines.append((key, line))
                record._values[key] = _unquote(value)
        return record

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Return the value of ``key`` or ``default`` if it is not set.
        """
        return self._values.get(key, default)

    def set(self, key: str, value: str):
        """
        Set ``key`` to ``value``, replacing any existing assignment.

        :raises: ``VmsnapArgumentError`` if ``value`` contains a line break.
        """
        check_record_value(value)
        line = f'{key}="{value}"'
        for index, (line_key, _) in enumerate(self._lines):
            if line_key == key:
                self._lines[index] = (key, line)
                break
        else:
            self._lines.append((key, line))
        self._values[key] = value

    def keys(self) -> List[str]:
        return list(self._values.keys())

    def __contains__(self, key):
        return key in self._values

    def save(self):
        """
        Write this record back to its file.
        """
        data = "".join(line + "\n" for _, line in self._lines)
        with open(self.path, "w", encoding="utf8") as fp:
            fp.write(data)


class GuestConfig(KeyValueFile):
    """
    A guest configuration file. Only the guest UUID and network interface
    fields are interpreted here.
    """

    @property
    def uuid(self) -> Optional[str]:
        return self.get(GUEST_UUID)

    def network_interfaces(self) -> Iterator[int]:
        """
        Yield the index of each declared network interface, scanning from
        zero until the first undeclared index.
        """
        index = 0
        while self.get(GUEST_NETWORK_TYPE % index) is not None:
            yield index
            index += 1

    def mac_addresses(self) -> List[str]:
        return [self._values[key] for key in self._values if _MAC_KEY_RE.match(key)]


def guest_config_path(backend: StorageBackend, name: str) -> str:
    """
    Return the path of the configuration file for guest ``name``.
    """
    return backend.path(name, name + GUEST_CONFIG_SUFFIX)


def guest_exists(backend: StorageBackend, name: str) -> bool:
    """
    A guest exists if its configuration file is present under its
    dataset path.
    """
    return exists(guest_config_path(backend, name))


def check_guest_exists(backend: StorageBackend, name: str):
    """
    :raises: ``VmsnapNotAGuestError`` if guest ``name`` does not exist.
    """
    if not guest_exists(backend, name):
        raise VmsnapNotAGuestError(f"{name} does not appear to be a valid virtual machine")


def load_guest_config(backend: StorageBackend, name: str) -> GuestConfig:
    """
    Load the configuration of guest ``name``.

    :raises: ``VmsnapNotFoundError`` if the configuration cannot be read.
    """
    path = guest_config_path(backend, name)
    try:
        return GuestConfig.load(path)
    except OSError as err:
        raise VmsnapNotFoundError(
            f"Could not read configuration for guest {name}: {err}"
        ) from err


def list_guests(backend: StorageBackend) -> List[str]:
    """
    Return the names of all guests found under the storage root.
    """
    if not isdir(backend.mount_path):
        return []
    return sorted(
        entry
        for entry in os.listdir(backend.mount_path)
        if exists(guest_config_path(backend, entry))
    )


class GuestState:
    """
    Guest power state. A guest is running while the hypervisor holds a
    device node for it in ``vmm_dir``.
    """

    def __init__(self, vmm_dir: str):
        self.vmm_dir = vmm_dir

    def is_running(self, name: str) -> bool:
        return exists(join(self.vmm_dir, name))

    def check_stopped(self, name: str, operation: str):
        """
        :raises: ``VmsnapGuestStateError`` if guest ``name`` is running.
        """
        if self.is_running(name):
            raise VmsnapGuestStateError(
                f"Guest {name} must be stopped to {operation}"
            )


class MacGenerator:
    """
    Generate MAC addresses that are not used by any configured guest.
    """

    def __init__(self, backend: StorageBackend, rng: Optional[random.Random] = None):
        self.backend = backend
        self._rng = rng or random.SystemRandom()
        self._issued = set()

    def _used_addresses(self):
        used = set(self._issued)
        for name in list_guests(self.backend):
            try:
                config = GuestConfig.load(guest_config_path(self.backend, name))
            except OSError as err:
                _log_warn("Skipping unreadable configuration for %s: %s", name, err)
                continue
            used.update(mac.lower() for mac in config.mac_addresses())
        return used

    def generate(self) -> str:
        """
        Return a new MAC address unique among configured guests and every
        address previously returned by this generator.
        """
        used = self._used_addresses()
        for _ in range(_MAC_MAX_ATTEMPTS):
            suffix = ":".join(f"{self._rng.randrange(256):02x}" for _ in range(3))
            mac = f"{MAC_PREFIX}:{suffix}"
            if mac not in used:
                self._issued.add(mac)
                _log_debug("Generated MAC address %s", mac)
                return mac
        raise VmsnapNotFoundError("Unable to find an unused MAC address")


__all__ = [
    "GUEST_UUID",
    "GUEST_NETWORK_TYPE",
    "GUEST_NETWORK_MAC",
    "GUEST_LOG_FILE",
    "MAC_PREFIX",
    "KeyValueFile",
    "GuestConfig",
    "check_record_value",
    "GuestState",
    "MacGenerator",
    "guest_config_path",
    "guest_exists",
    "check_guest_exists",
    "load_guest_config",
    "list_guests",
]
