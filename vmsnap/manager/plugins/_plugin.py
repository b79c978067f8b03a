# Copyright Red Hat
#
# vmsnap/manager/plugins/_plugin.py - Guest storage backend plugins
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Guest storage backend plugin helpers.
"""

#: Separator between a backend marker and its dataset root in a
#: storage location value: ``zfs:zroot/vm``.
MARKER_SEPARATOR = ":"

#: Plugin configuration commands section
_PLUGIN_CFG_COMMANDS = "Commands"


def plugin_command(cfg, key, default):
    """
    Return the command path configured for ``key`` in the ``[Commands]``
    section of a plugin configuration, or ``default`` if unset.
    """
    if cfg.has_section(_PLUGIN_CFG_COMMANDS):
        if cfg.has_option(_PLUGIN_CFG_COMMANDS, key):
            return cfg.get(_PLUGIN_CFG_COMMANDS, key)
    return default


class Plugin:
    """
    Abstract base class for copy-on-write storage backend plugins.

    A backend addresses storage by hierarchical, slash separated dataset
    names. Operations that fail in the backend raise ``VmsnapCalloutError``
    with the backend's own diagnostic as the message.
    """

    name = "plugin"
    version = "0.1.0"
    marker = None

    def __init__(self, logger, plugin_cfg):
        self.logger = logger
        self.plugin_cfg = plugin_cfg

    def _log_error(self, *args):
        """
        Log at error level.
        """
        self.logger.error(*args)

    def _log_warn(self, *args):
        """
        Log at warning level.
        """
        self.logger.warning(*args)

    def _log_info(self, *args):
        """
        Log at info level.
        """
        self.logger.info(*args)

    def _log_debug(self, *args):
        """
        Log at debug level.
        """
        self.logger.debug(*args)

    def info(self):
        """
        Return plugin name and version.
        """
        return {"name": self.name, "version": self.version}

    def handles(self, location):
        """
        Test whether the storage location value ``location`` names a
        dataset managed by this plugin.

        :param location: A configured storage location string.
        :returns: ``True`` if ``location`` carries this plugin's marker.
        """
        if not self.marker:
            return False
        return location.startswith(self.marker + MARKER_SEPARATOR)

    def dataset_from_location(self, location):
        """
        Return the dataset root named by storage location ``location``.
        """
        return location.removeprefix(self.marker + MARKER_SEPARATOR).strip("/")

    def is_active(self):
        """
        Test whether the backend storage service is active.
        """
        raise NotImplementedError

    def mount_point(self, dataset):
        """
        Return the live mount point of ``dataset``, or ``None`` if the
        dataset does not exist or is not mounted.
        """
        raise NotImplementedError

    def dataset_exists(self, dataset):
        """
        Test whether ``dataset`` exists.
        """
        raise NotImplementedError

    def create_dataset(self, dataset, options):
        """
        Create the file system dataset ``dataset``.

        :param dataset: The full name of the dataset to create.
        :param options: A list of ``key=value`` creation options.
        """
        raise NotImplementedError

    def destroy_dataset(self, dataset):
        """
        Recursively and forcibly destroy ``dataset`` with all of its
        children and snapshots.
        """
        raise NotImplementedError

    def rename_dataset(self, old_dataset, new_dataset):
        """
        Rename ``old_dataset`` to ``new_dataset``.
        """
        raise NotImplementedError

    def create_volume(self, dataset, size, sparse, options):
        """
        Create the block volume ``dataset``.

        :param dataset: The full name of the volume to create.
        :param size: The volume size as a backend size string.
        :param sparse: ``True`` to create a sparse (thin) volume.
        :param options: A list of ``key=value`` creation options.
        """
        raise NotImplementedError

    def create_snapshot(self, dataset, label, recursive=True):
        """
        Create the snapshot ``dataset@label``, optionally across every
        descendant dataset in one atomic operation.
        """
        raise NotImplementedError

    def destroy_snapshot(self, dataset, label, recursive=True):
        """
        Destroy the snapshot ``dataset@label`` and optionally the same
        named snapshot of every descendant dataset.
        """
        raise NotImplementedError

    def list_datasets(self, dataset):
        """
        Return the names of ``dataset`` and every file system and volume
        below it, parents before children.
        """
        raise NotImplementedError

    def list_snapshots(self, dataset):
        """
        Return the snapshot labels of ``dataset``, oldest first.
        """
        raise NotImplementedError

    def snapshot_exists(self, dataset, label):
        """
        Test whether the snapshot ``dataset@label`` exists.
        """
        raise NotImplementedError

    def rollback(self, dataset, label, destroy_newer=False):
        """
        Roll ``dataset`` back to the snapshot ``dataset@label``.

        :param destroy_newer: Destroy any snapshots more recent than
                              ``label``. If ``False`` and newer snapshots
                              exist the rollback fails.
        """
        raise NotImplementedError

    def clone(self, dataset, label, target):
        """
        Create the writable dataset ``target`` from ``dataset@label``.
        """
        raise NotImplementedError

    def send(self, dataset, label, writer):
        """
        Write a replication stream of ``dataset@label`` and all of its
        descendants to the binary file-like object ``writer``.
        """
        raise NotImplementedError

    def receive(self, dataset, reader):
        """
        Create ``dataset`` from a replication stream read from the binary
        file-like object ``reader``.
        """
        raise NotImplementedError


__all__ = [
    "MARKER_SEPARATOR",
    "Plugin",
    "plugin_command",
]
