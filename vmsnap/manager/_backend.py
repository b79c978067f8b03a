# Copyright Red Hat
#
# vmsnap/manager/_backend.py - Storage backend resolution and datasets
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Storage backend resolution and single dataset operations.
"""
from typing import Iterable, List, Optional
import logging

from vmsnap import (
    VMSNAP_SUBSYSTEM_BACKEND,
    VmsnapCalloutError,
    VmsnapBackendUnavailableError,
    VmsnapMountNotFoundError,
    VmsnapBackendRequiredError,
    VmsnapDatasetCreateError,
    VmsnapDatasetRenameError,
    VmsnapVolumeCreateError,
    StorageBackend,
    split_options,
)
from vmsnap.manager.plugins import Plugin

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_backend(msg, *args, **kwargs):
    """A wrapper for backend subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": VMSNAP_SUBSYSTEM_BACKEND}, **kwargs)


def resolve_backend(
    location: str, plugins: List[Plugin], markers: Optional[Iterable[str]] = None
) -> StorageBackend:
    """
    Resolve the configured guest storage location ``location``.

    If ``location`` carries the marker of one of ``plugins`` (for example
    ``zfs:zroot/vm``) the remainder names the dataset root, which must be
    mounted; otherwise ``location`` is a plain directory used verbatim.

    :param location: The configured storage location value.
    :param plugins: The loaded backend plugins.
    :param markers: All known backend markers, including those of plugins
                    that were disabled or could not be loaded.
    :returns: A ``StorageBackend`` for the location.
    :raises: ``VmsnapBackendUnavailableError`` if the backend service is not
             active or no loaded plugin handles a known backend marker, or
             ``VmsnapMountNotFoundError`` if the dataset root has no live
             mount point.
    """
    for plugin in plugins:
        if not plugin.handles(location):
            continue
        dataset_root = plugin.dataset_from_location(location)
        _log_debug_backend(
            "Storage location '%s' uses %s dataset %s", location, plugin.name, dataset_root
        )
        if not plugin.is_active():
            raise VmsnapBackendUnavailableError(
                f"Storage backend {plugin.name} is not available"
            )
        mount_path = plugin.mount_point(dataset_root)
        if not mount_path:
            raise VmsnapMountNotFoundError(
                f"Unable to locate mountpoint for {plugin.name} dataset {dataset_root}"
            )
        _log_debug_backend("Resolved %s to %s", dataset_root, mount_path)
        return StorageBackend(True, dataset_root, mount_path, plugin)

    known = set(markers or []) | {p.marker for p in plugins if p.marker}
    prefix = location.split("/", 1)[0]
    if ":" in prefix:
        marker = prefix.split(":", 1)[0]
        if marker in known:
            raise VmsnapBackendUnavailableError(
                f"Storage backend for '{marker}:' locations is not loaded"
            )
        _log_warn("No backend plugin handles storage location '%s'", location)
    return StorageBackend(False, "", location)


def require_backend(backend: StorageBackend, operation: str):
    """
    :raises: ``VmsnapBackendRequiredError`` if ``backend`` is not enabled.
    """
    if not backend.enabled:
        raise VmsnapBackendRequiredError(
            f"Cannot {operation}: guest storage is not on a copy-on-write backend"
        )


class Datasets:
    """
    Create, destroy and rename single datasets below the storage root.
    """

    def __init__(self, backend: StorageBackend, default_options: str = ""):
        self.backend = backend
        self.default_options = default_options

    def _options(self, options: Optional[str]) -> List[str]:
        if options is None:
            options = self.default_options
        return split_options(options)

    def exists(self, name: str) -> bool:
        if not self.backend.enabled:
            return False
        return self.backend.provider.dataset_exists(self.backend.dataset(name))

    def create(self, name: str, options: Optional[str] = None):
        """
        Create dataset ``name`` below the storage root. Does nothing if the
        backend is disabled or ``name`` is empty.

        :param options: Whitespace delimited ``key=value`` creation options,
                        or ``None`` for the configured defaults.
        :raises: ``VmsnapDatasetCreateError`` on backend error.
        """
        if not self.backend.enabled or not name:
            return
        dataset = self.backend.dataset(name)
        _log_debug_backend("Creating dataset %s", dataset)
        try:
            self.backend.provider.create_dataset(dataset, self._options(options))
        except VmsnapCalloutError as err:
            raise VmsnapDatasetCreateError(
                f"Failed to create dataset {dataset}: {err}"
            ) from err

    def destroy(self, name: str, best_effort: bool = False) -> bool:
        """
        Recursively and forcibly destroy dataset ``name``.

        :param best_effort: Log failures instead of raising them, for
                            callers that are tearing a guest down.
        :returns: ``True`` on success or ``False`` if a best effort destroy
                  failed.
        :raises: ``VmsnapCalloutError`` on backend error unless
                 ``best_effort`` is set.
        """
        if not self.backend.enabled or not name:
            return True
        dataset = self.backend.dataset(name)
        _log_debug_backend("Destroying dataset %s", dataset)
        try:
            self.backend.provider.destroy_dataset(dataset)
        except VmsnapCalloutError as err:
            if not best_effort:
                raise
            _log_warn("Failed to destroy dataset %s: %s", dataset, err)
            return False
        return True

    def rename(self, old_name: str, new_name: str):
        """
        Rename dataset ``old_name`` to ``new_name``. Does nothing if the
        backend is disabled.

        :raises: ``VmsnapDatasetRenameError`` on backend error.
        """
        if not self.backend.enabled:
            return
        old_dataset = self.backend.dataset(old_name)
        new_dataset = self.backend.dataset(new_name)
        _log_debug_backend("Renaming dataset %s to %s", old_dataset, new_dataset)
        try:
            self.backend.provider.rename_dataset(old_dataset, new_dataset)
        except VmsnapCalloutError as err:
            raise VmsnapDatasetRenameError(
                f"Failed to rename dataset {old_dataset} to {new_dataset}: {err}"
            ) from err

    def create_volume(
        self, name: str, size: str, sparse: bool = False, options: Optional[str] = None
    ):
        """
        Create the block volume ``name`` of ``size``.

        :param sparse: Create a sparse volume instead of reserving ``size``.
        :raises: ``VmsnapBackendRequiredError`` if the backend is disabled,
                 or ``VmsnapVolumeCreateError`` on backend error.
        """
        require_backend(self.backend, "create volume")
        dataset = self.backend.dataset(name)
        _log_debug_backend(
            "Creating %s volume %s (%s)", "sparse" if sparse else "thick", dataset, size
        )
        try:
            self.backend.provider.create_volume(
                dataset, size, sparse, self._options(options)
            )
        except VmsnapCalloutError as err:
            raise VmsnapVolumeCreateError(
                f"Failed to create volume {dataset}: {err}"
            ) from err


__all__ = [
    "resolve_backend",
    "require_backend",
    "Datasets",
]
