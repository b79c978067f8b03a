# Copyright Red Hat
#
# vmsnap/_vmsnap.py - Guest storage manager global definitions
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level vmsnap package.
"""
from typing import List, Optional, Tuple, TYPE_CHECKING
from dataclasses import dataclass, field
from datetime import datetime
from os.path import join
import logging
import string

if TYPE_CHECKING:
    from .manager.plugins import Plugin

_log = logging.getLogger("vmsnap")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Vmsnap debugging subsystem mask
VMSNAP_DEBUG_MANAGER = 1
VMSNAP_DEBUG_COMMAND = 2
VMSNAP_DEBUG_BACKEND = 4
VMSNAP_DEBUG_IMAGES = 8
VMSNAP_DEBUG_ALL = (
    VMSNAP_DEBUG_MANAGER | VMSNAP_DEBUG_COMMAND | VMSNAP_DEBUG_BACKEND | VMSNAP_DEBUG_IMAGES
)

# Vmsnap debugging subsystem names
VMSNAP_SUBSYSTEM_MANAGER = "vmsnap.manager"
VMSNAP_SUBSYSTEM_COMMAND = "vmsnap.command"
VMSNAP_SUBSYSTEM_BACKEND = "vmsnap.backend"
VMSNAP_SUBSYSTEM_IMAGES = "vmsnap.images"

_DEBUG_MASK_TO_SUBSYSTEM = {
    VMSNAP_DEBUG_MANAGER: VMSNAP_SUBSYSTEM_MANAGER,
    VMSNAP_DEBUG_COMMAND: VMSNAP_SUBSYSTEM_COMMAND,
    VMSNAP_DEBUG_BACKEND: VMSNAP_SUBSYSTEM_BACKEND,
    VMSNAP_DEBUG_IMAGES: VMSNAP_SUBSYSTEM_IMAGES,
}

_debug_subsystems = set()

#: Separator between guest name and snapshot label in a guest token.
SNAPSHOT_SEPARATOR = "@"

#: strftime format for generated snapshot labels (one second resolution).
SNAPSHOT_LABEL_FORMAT = "%Y-%m-%d-%H:%M:%S"

#: Suffix of a guest configuration file: ``<name>/<name>.conf``
GUEST_CONFIG_SUFFIX = ".conf"

#: Description recorded for images created without one.
DEFAULT_IMAGE_DESCRIPTION = "No description provided"

# Image manifest keys
MANIFEST_DESCRIPTION = "description"
MANIFEST_CREATED = "created"
MANIFEST_NAME = "name"
MANIFEST_FILENAME = "filename"

# Constant for allow-listed guest name characters
VMSNAP_VALID_NAME_CHARS = set(
    string.ascii_lowercase + string.ascii_uppercase + string.digits + "_.-"
)


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True

        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``vmsnap`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    vmsnap_log = logging.getLogger("vmsnap")

    for handler in vmsnap_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``vmsnap`` package.

    :param mask: the logical OR of the ``VMSNAP_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > VMSNAP_DEBUG_ALL:
        raise ValueError(f"Invalid vmsnap debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    vmsnap_log = logging.getLogger("vmsnap")
    for handler in vmsnap_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Vmsnap exception types
#


class VmsnapError(Exception):
    """
    Base class for guest storage manager errors.
    """


class VmsnapCalloutError(VmsnapError):
    """
    An error calling out to the storage backend. The message is the
    backend's own diagnostic output.
    """


class VmsnapPluginError(VmsnapError):
    """
    A backend plugin could not be initialised.
    """


class VmsnapArgumentError(VmsnapError):
    """
    A malformed invocation or invalid argument.
    """


class VmsnapInvalidTokenError(VmsnapArgumentError):
    """
    A ``guest[@label]`` token could not be parsed, or lacks a required
    snapshot label.
    """


class VmsnapBackendUnavailableError(VmsnapError):
    """
    The copy-on-write storage service is not active.
    """


class VmsnapMountNotFoundError(VmsnapError):
    """
    No live mount point was found for the configured dataset root.
    """


class VmsnapBackendRequiredError(VmsnapError):
    """
    The requested operation needs a copy-on-write backend but guest storage
    is a plain directory.
    """


class VmsnapDatasetCreateError(VmsnapError):
    """
    A dataset could not be created.
    """


class VmsnapDatasetRenameError(VmsnapError):
    """
    A dataset could not be renamed.
    """


class VmsnapVolumeCreateError(VmsnapError):
    """
    A volume could not be created.
    """


class VmsnapNotAGuestError(VmsnapError):
    """
    The named guest does not exist.
    """


class VmsnapGuestStateError(VmsnapError):
    """
    The guest is running and the operation requires it to be stopped.
    """


class VmsnapExistsError(VmsnapError):
    """
    The target of an operation already exists.
    """


class VmsnapNotFoundError(VmsnapError):
    """
    The requested object does not exist.
    """


class VmsnapSnapshotMissingError(VmsnapNotFoundError):
    """
    A dataset in a guest's tree has no snapshot with the requested label.
    """


class VmsnapSnapshotError(VmsnapError):
    """
    A snapshot could not be created.
    """


class VmsnapCloneError(VmsnapError):
    """
    A guest clone could not be completed.
    """


class VmsnapImageCreateError(VmsnapError):
    """
    An image could not be created.
    """


class VmsnapManifestError(VmsnapError):
    """
    An image manifest is missing a required key.
    """


class VmsnapImageProvisionError(VmsnapError):
    """
    A guest could not be provisioned from an image.
    """


class VmsnapImageDestroyError(VmsnapError):
    """
    An image could not be removed.
    """


#
# Data model
#


@dataclass(frozen=True)
class GuestToken:
    """
    A parsed ``guest[@label]`` token.
    """

    name: str
    label: Optional[str] = None

    def __str__(self):
        if self.label is None:
            return self.name
        return f"{self.name}{SNAPSHOT_SEPARATOR}{self.label}"


def parse_guest_token(token: str, require_label: bool = False) -> GuestToken:
    """
    Parse a ``guest[@label]`` token. The first ``@`` is the only separator:
    anything following it belongs to the label.

    :param token: The user supplied token.
    :param require_label: Reject tokens that carry no snapshot label.
    :returns: A ``GuestToken`` with ``label`` set to ``None`` when absent.
    :raises: ``VmsnapInvalidTokenError`` if the guest name is empty, the
             label is empty, or a required label is absent.
    """
    (name, sep, label) = (token or "").partition(SNAPSHOT_SEPARATOR)
    if not name:
        raise VmsnapInvalidTokenError(f"Invalid guest token '{token}': no guest name")
    if sep and not label:
        raise VmsnapInvalidTokenError(
            f"Invalid guest token '{token}': empty snapshot label"
        )
    if require_label and not sep:
        raise VmsnapInvalidTokenError(
            f"A snapshot label is required: expected {name}{SNAPSHOT_SEPARATOR}<label>"
        )
    return GuestToken(name, label if sep else None)


def validate_guest_name(name: str):
    """
    Check that ``name`` is usable as a guest and dataset name.

    :raises: ``VmsnapArgumentError`` if the name is empty or contains
             characters outside ``VMSNAP_VALID_NAME_CHARS``.
    """
    if not name:
        raise VmsnapArgumentError("Guest name cannot be empty")
    if name[0] in "._-":
        raise VmsnapArgumentError(
            f"Guest name cannot begin with '{name[0]}': {name}"
        )
    for char in name:
        if char not in VMSNAP_VALID_NAME_CHARS:
            raise VmsnapArgumentError(
                f"Guest name contains invalid character '{char}': {name}"
            )


def snapshot_label(now: Optional[datetime] = None) -> str:
    """
    Generate a snapshot label from the current time.
    """
    return (now or datetime.now()).strftime(SNAPSHOT_LABEL_FORMAT)


def split_options(options: Optional[str]) -> List[str]:
    """
    Split a whitespace delimited string of ``key=value`` creation options
    into a list of ``key=value`` tokens.

    :param options: The option string; ``None`` or empty yields no options.
    :returns: A list of ``key=value`` strings.
    :raises: ``VmsnapArgumentError`` if a token is not of the form
             ``key=value``.
    """
    if not options:
        return []
    tokens = options.split()
    for token in tokens:
        (key, sep, _) = token.partition("=")
        if not key or not sep:
            raise VmsnapArgumentError(f"Malformed dataset option: '{token}'")
    return tokens


@dataclass
class StorageBackend:
    """
    The resolved guest storage location. When ``enabled`` is ``True``,
    ``mount_path`` is the live mount point of ``dataset_root``, and
    ``provider`` is the plugin managing it.
    """

    enabled: bool
    dataset_root: str
    mount_path: str
    provider: Optional["Plugin"] = None

    def dataset(self, name: str) -> str:
        """
        Return the backend dataset name for ``name`` under the root.
        """
        if not name:
            return self.dataset_root
        return f"{self.dataset_root}/{name}"

    def path(self, *parts: str) -> str:
        """
        Return the filesystem path for ``parts`` below the mount path.
        """
        return join(self.mount_path, *parts)

    def __str__(self):
        if not self.enabled:
            return f"directory:{self.mount_path}"
        return f"{self.provider.name}:{self.dataset_root} on {self.mount_path}"


@dataclass(frozen=True)
class Snapshot:
    """
    A point-in-time snapshot of a guest's dataset tree.
    """

    guest_name: str
    label: str
    recursive: bool = True

    @property
    def name(self):
        """
        The ``guest@label`` name of this snapshot.
        """
        return f"{self.guest_name}{SNAPSHOT_SEPARATOR}{self.label}"

    def __str__(self):
        return self.name


@dataclass
class CloneOperation:
    """
    A completed guest clone and the datasets it created.
    """

    source_guest: str
    source_label: Optional[str]
    target_guest: str
    dataset_mapping: List[Tuple[str, str]] = field(default_factory=list)

    def __str__(self):
        lines = [f"Cloned {self.source_guest}@{self.source_label} to {self.target_guest}"]
        for source, target in self.dataset_mapping:
            lines.append(f"  {source} -> {target}")
        return "\n".join(lines)


@dataclass
class Image:
    """
    A packaged guest image: a manifest plus a compressed data file.
    """

    uuid: str
    name: Optional[str]
    filename: Optional[str]
    description: str = DEFAULT_IMAGE_DESCRIPTION
    created: Optional[datetime] = None

    @property
    def created_str(self):
        """
        The creation time formatted for display.
        """
        if self.created is None:
            return "-"
        return self.created.strftime("%Y-%m-%d %H:%M:%S")

    def __str__(self):
        return "\n".join(
            [
                f"UUID:         {self.uuid}",
                f"Name:         {self.name}",
                f"Created:      {self.created_str}",
                f"Description:  {self.description}",
                f"Filename:     {self.filename}",
            ]
        )


__all__ = [
    "VMSNAP_DEBUG_MANAGER",
    "VMSNAP_DEBUG_COMMAND",
    "VMSNAP_DEBUG_BACKEND",
    "VMSNAP_DEBUG_IMAGES",
    "VMSNAP_DEBUG_ALL",
    "VMSNAP_SUBSYSTEM_MANAGER",
    "VMSNAP_SUBSYSTEM_COMMAND",
    "VMSNAP_SUBSYSTEM_BACKEND",
    "VMSNAP_SUBSYSTEM_IMAGES",
    "VMSNAP_VALID_NAME_CHARS",
    "SNAPSHOT_SEPARATOR",
    "SNAPSHOT_LABEL_FORMAT",
    "GUEST_CONFIG_SUFFIX",
    "DEFAULT_IMAGE_DESCRIPTION",
    "MANIFEST_DESCRIPTION",
    "MANIFEST_CREATED",
    "MANIFEST_NAME",
    "MANIFEST_FILENAME",
    "SubsystemFilter",
    "set_debug_mask",
    "get_debug_mask",
    "VmsnapError",
    "VmsnapCalloutError",
    "VmsnapPluginError",
    "VmsnapArgumentError",
    "VmsnapInvalidTokenError",
    "VmsnapBackendUnavailableError",
    "VmsnapMountNotFoundError",
    "VmsnapBackendRequiredError",
    "VmsnapDatasetCreateError",
    "VmsnapDatasetRenameError",
    "VmsnapVolumeCreateError",
    "VmsnapNotAGuestError",
    "VmsnapGuestStateError",
    "VmsnapExistsError",
    "VmsnapNotFoundError",
    "VmsnapSnapshotMissingError",
    "VmsnapSnapshotError",
    "VmsnapCloneError",
    "VmsnapImageCreateError",
    "VmsnapManifestError",
    "VmsnapImageProvisionError",
    "VmsnapImageDestroyError",
    "GuestToken",
    "parse_guest_token",
    "validate_guest_name",
    "snapshot_label",
    "split_options",
    "StorageBackend",
    "Snapshot",
    "CloneOperation",
    "Image",
]
