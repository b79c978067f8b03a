# Copyright Red Hat
#
# vmsnap/manager/_clone.py - Guest clone engine
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Clone a guest's complete dataset tree into a new guest.
"""
from os.path import exists
from uuid import uuid4
import logging
import os

from vmsnap import (
    GUEST_CONFIG_SUFFIX,
    VMSNAP_SUBSYSTEM_MANAGER,
    VmsnapCalloutError,
    VmsnapCloneError,
    VmsnapExistsError,
    VmsnapNotFoundError,
    StorageBackend,
    CloneOperation,
    parse_guest_token,
    validate_guest_name,
)

from ._backend import require_backend
from ._guests import (
    GUEST_LOG_FILE,
    GUEST_NETWORK_MAC,
    GUEST_UUID,
    GuestState,
    MacGenerator,
    guest_exists,
    load_guest_config,
)
from ._snapshots import Snapshots

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": VMSNAP_SUBSYSTEM_MANAGER}, **kwargs)


def map_dataset(dataset: str, root: str, source: str, target: str) -> str:
    """
    Map ``dataset`` in the tree of guest ``source`` to the matching dataset
    in the tree of guest ``target``, both below ``root``.

    >>> map_dataset("zroot/vm/web1/disk0", "zroot/vm", "web1", "web2")
    'zroot/vm/web2/disk0'
    """
    source_prefix = f"{root}/{source}"
    if dataset != source_prefix and not dataset.startswith(source_prefix + "/"):
        raise ValueError(f"Dataset {dataset} is not below {source_prefix}")
    return f"{root}/{target}{dataset[len(source_prefix):]}"


class Cloner:
    """
    Clone guests by cloning every dataset in the source guest's tree from a
    common snapshot and giving the copy a new identity.
    """

    def __init__(
        self,
        backend: StorageBackend,
        snapshots: Snapshots,
        guest_state: GuestState,
        mac_generator: MacGenerator = None,
    ):
        self.backend = backend
        self.snapshots = snapshots
        self.guest_state = guest_state
        self.mac_generator = mac_generator or MacGenerator(backend)

    def _clone_label(self, source: str, label):
        if label:
            return label
        self.guest_state.check_stopped(source, "clone without a snapshot label")
        label = str(uuid4()).split("-", 1)[0]
        self.snapshots.snapshot_tree(source, label)
        return label

    def _rename_config(self, source: str, target: str):
        old_path = self.backend.path(target, source + GUEST_CONFIG_SUFFIX)
        new_path = self.backend.path(target, target + GUEST_CONFIG_SUFFIX)
        try:
            os.rename(old_path, new_path)
        except OSError as err:
            raise VmsnapCloneError(
                f"Failed to rename configuration for {target}: {err}"
            ) from err

        log_path = self.backend.path(target, GUEST_LOG_FILE)
        try:
            os.unlink(log_path)
        except FileNotFoundError:
            pass
        except OSError as err:
            _log_warn("Could not remove copied log file %s: %s", log_path, err)

    def _regenerate_identity(self, target: str):
        config = load_guest_config(self.backend, target)
        config.set(GUEST_UUID, str(uuid4()))
        for index in config.network_interfaces():
            config.set(GUEST_NETWORK_MAC % index, self.mac_generator.generate())
        config.save()
        _log_debug_manager("Assigned new identity %s to %s", config.uuid, target)

    def clone(self, source_token: str, target: str) -> CloneOperation:
        """
        Clone the guest named by ``source_token`` into the new guest
        ``target``.

        With no label, the source guest must be stopped and a fresh
        recursive snapshot is taken. With a label every dataset in the
        source tree must already have that snapshot. A failure part way
        through leaves the datasets cloned so far in place.

        :param source_token: The ``guest[@label]`` source token.
        :param target: The name of the new guest.
        :returns: A ``CloneOperation`` describing the new guest.
        :raises: ``VmsnapExistsError``, ``VmsnapNotFoundError``,
                 ``VmsnapSnapshotMissingError``, ``VmsnapGuestStateError``,
                 ``VmsnapSnapshotError`` or ``VmsnapCloneError``.
        """
        source = parse_guest_token(source_token)
        validate_guest_name(target)
        require_backend(self.backend, "clone")

        if exists(self.backend.path(target)):
            raise VmsnapExistsError(f"Guest {target} already exists")
        if not guest_exists(self.backend, source.name):
            raise VmsnapNotFoundError(f"Source guest {source.name} not found")

        datasets = self.snapshots.list_dataset_tree(source.name)
        if source.label:
            self.snapshots.check_tree_has_snapshot(datasets, source.label)
        label = self._clone_label(source.name, source.label)

        operation = CloneOperation(source.name, label, target)
        provider = self.backend.provider
        for dataset in datasets:
            target_dataset = map_dataset(
                dataset, self.backend.dataset_root, source.name, target
            )
            _log_debug_manager("Cloning %s@%s to %s", dataset, label, target_dataset)
            try:
                provider.clone(dataset, label, target_dataset)
            except VmsnapCalloutError as err:
                raise VmsnapCloneError(
                    f"Failed to clone {dataset}@{label} to {target_dataset}: {err}"
                ) from err
            operation.dataset_mapping.append((dataset, target_dataset))

        self._rename_config(source.name, target)
        self._regenerate_identity(target)
        _log_info("Cloned %s@%s to %s", source.name, label, target)
        return operation


__all__ = [
    "Cloner",
    "map_dataset",
]
