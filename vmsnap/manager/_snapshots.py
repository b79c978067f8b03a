# Copyright Red Hat
#
# vmsnap/manager/_snapshots.py - Guest snapshot management
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Recursive snapshots of guest dataset trees.
"""
from typing import List, Optional
import logging

from vmsnap import (
    VMSNAP_SUBSYSTEM_MANAGER,
    VmsnapCalloutError,
    VmsnapSnapshotError,
    VmsnapSnapshotMissingError,
    StorageBackend,
    Snapshot,
    parse_guest_token,
    snapshot_label,
)

from ._backend import require_backend
from ._guests import GuestState, check_guest_exists

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": VMSNAP_SUBSYSTEM_MANAGER}, **kwargs)


class Snapshots:
    """
    Create, list, destroy and roll back recursive guest snapshots.
    """

    def __init__(self, backend: StorageBackend, guest_state: GuestState):
        self.backend = backend
        self.guest_state = guest_state

    @property
    def _provider(self):
        return self.backend.provider

    def snapshot_tree(self, name: str, label: str) -> Snapshot:
        """
        Take a recursive snapshot of the dataset tree of guest ``name`` at
        ``label``, without any guest checks.

        :raises: ``VmsnapSnapshotError`` on backend error.
        """
        dataset = self.backend.dataset(name)
        _log_debug_manager("Taking recursive snapshot %s@%s", dataset, label)
        try:
            self._provider.create_snapshot(dataset, label, recursive=True)
        except VmsnapCalloutError as err:
            raise VmsnapSnapshotError(
                f"Failed to create snapshot {dataset}@{label}: {err}"
            ) from err
        return Snapshot(name, label)

    def create(self, token: str, force: bool = False) -> Snapshot:
        """
        Create a recursive snapshot from a ``guest[@label]`` token. If no
        label is given the current time is used.

        :param token: The ``guest[@label]`` token.
        :param force: Snapshot the guest even if it is running.
        :returns: The new ``Snapshot``.
        :raises: ``VmsnapBackendRequiredError``, ``VmsnapNotAGuestError``,
                 ``VmsnapGuestStateError`` or ``VmsnapSnapshotError``.
        """
        guest = parse_guest_token(token)
        require_backend(self.backend, "create snapshot")
        check_guest_exists(self.backend, guest.name)

        if self.guest_state.is_running(guest.name):
            if not force:
                self.guest_state.check_stopped(guest.name, "create a snapshot")
            _log_warn("Creating snapshot of running guest %s", guest.name)

        label = guest.label or snapshot_label()
        snapshot = self.snapshot_tree(guest.name, label)
        _log_info("Created snapshot %s", snapshot)
        return snapshot

    def list_dataset_tree(self, name: str) -> List[str]:
        """
        Return every dataset and volume in the tree of guest ``name``,
        parents before their children.
        """
        require_backend(self.backend, "list datasets")
        return self._provider.list_datasets(self.backend.dataset(name))

    def list(self, name: str) -> List[str]:
        """
        Return the snapshot labels of guest ``name``, oldest first.
        """
        require_backend(self.backend, "list snapshots")
        check_guest_exists(self.backend, name)
        return self._provider.list_snapshots(self.backend.dataset(name))

    def destroy(self, token: str):
        """
        Destroy the recursive snapshot named by a ``guest@label`` token.

        :raises: ``VmsnapInvalidTokenError`` if the token has no label,
                 ``VmsnapSnapshotMissingError`` if the snapshot does not
                 exist, or ``VmsnapCalloutError`` on backend error.
        """
        guest = parse_guest_token(token, require_label=True)
        require_backend(self.backend, "destroy snapshot")
        dataset = self.backend.dataset(guest.name)
        if not self._provider.snapshot_exists(dataset, guest.label):
            raise VmsnapSnapshotMissingError(
                f"Snapshot {dataset}@{guest.label} does not exist"
            )
        self._provider.destroy_snapshot(dataset, guest.label, recursive=True)
        _log_info("Destroyed snapshot %s", guest)

    def _find_missing(self, datasets: List[str], label: str) -> Optional[str]:
        for dataset in datasets:
            if not self._provider.snapshot_exists(dataset, label):
                return dataset
        return None

    def check_tree_has_snapshot(self, datasets: List[str], label: str):
        """
        :raises: ``VmsnapSnapshotMissingError`` naming the first dataset in
                 ``datasets`` without a snapshot at ``label``.
        """
        missing = self._find_missing(datasets, label)
        if missing:
            raise VmsnapSnapshotMissingError(
                f"Snapshot {missing}@{label} does not exist"
            )

    def rollback(self, token: str, force: bool = False) -> Snapshot:
        """
        Roll back every dataset in a guest's tree to ``guest@label``.

        The guest must be stopped regardless of ``force``. Without
        ``force``, a dataset with snapshots newer than ``label`` fails the
        rollback and the backend diagnostic listing them is raised as is.
        The first failing dataset ends the rollback.

        :param token: The ``guest@label`` token.
        :param force: Destroy snapshots newer than ``label``.
        :raises: ``VmsnapInvalidTokenError``, ``VmsnapBackendRequiredError``,
                 ``VmsnapNotAGuestError``, ``VmsnapGuestStateError``,
                 ``VmsnapSnapshotMissingError`` or ``VmsnapCalloutError``.
        """
        guest = parse_guest_token(token, require_label=True)
        require_backend(self.backend, "roll back")
        check_guest_exists(self.backend, guest.name)
        self.guest_state.check_stopped(guest.name, "roll back")

        datasets = self.list_dataset_tree(guest.name)
        self.check_tree_has_snapshot(datasets, guest.label)

        for dataset in datasets:
            _log_debug_manager("Rolling back %s to %s", dataset, guest.label)
            try:
                self._provider.rollback(dataset, guest.label, destroy_newer=force)
            except VmsnapCalloutError:
                _log_error("Rollback of %s@%s failed", dataset, guest.label)
                raise
        _log_info("Rolled back %s", guest)
        return Snapshot(guest.name, guest.label)


__all__ = [
    "Snapshots",
]
