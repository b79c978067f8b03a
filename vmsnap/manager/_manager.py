# Copyright Red Hat
#
# vmsnap/manager/_manager.py - Guest storage manager
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Manager interface and configuration for guest storage.
"""
from configparser import ConfigParser
from dataclasses import dataclass, field
from os.path import exists, join
from typing import List, Optional
import logging

from vmsnap import (
    VMSNAP_SUBSYSTEM_MANAGER,
    VmsnapNotFoundError,
    VmsnapPluginError,
    CloneOperation,
    Image,
    Snapshot,
    StorageBackend,
)

from ._backend import Datasets, resolve_backend
from ._clone import Cloner
from ._guests import GuestState
from ._images import Images
from ._loader import load_plugins, plugin_markers
from ._pipeline import COMPRESSION_ZSTD, check_compression
from ._snapshots import Snapshots

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: vmsnap configuration directory
_VMSNAP_CFG_DIR = "/etc/vmsnap"

#: vmsnap configuration file
_VMSNAP_CFG_PATH = join(_VMSNAP_CFG_DIR, "vmsnap.conf")

#: Backend plugin configuration directory
_PLUGINS_D_PATH = join(_VMSNAP_CFG_DIR, "plugins.d")

_VMSNAP_CFG_GLOBAL = "Global"
_VMSNAP_CFG_STORAGE_ROOT = "StorageRoot"
_VMSNAP_CFG_COMPRESSION = "Compression"
_VMSNAP_CFG_DATASET_OPTIONS = "DatasetOptions"
_VMSNAP_CFG_VMM_DIR = "VmmDir"
_VMSNAP_CFG_DISABLE_PLUGINS = "DisablePlugins"

#: Default guest storage location
DEFAULT_STORAGE_ROOT = "/vm"

#: Default hypervisor device directory
DEFAULT_VMM_DIR = "/dev/vmm"


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": VMSNAP_SUBSYSTEM_MANAGER}, **kwargs)


@dataclass
class VmsnapConfig:
    """
    Manager configuration.
    """

    storage_root: str = DEFAULT_STORAGE_ROOT
    compression: str = COMPRESSION_ZSTD
    dataset_options: str = ""
    vmm_dir: str = DEFAULT_VMM_DIR
    disable_plugins: List[str] = field(default_factory=list)

    @classmethod
    def from_file(cls, config_file: str) -> "VmsnapConfig":
        """
        Load ``VmsnapConfig`` from an INI-style configuration file located at
        ``config_file``.

        :param config_file: path to vmsnap.conf
        :type config_file: ``str``.
        :returns: A ``VmsnapConfig`` instance initialised from ``config_file``.
        :rtype: ``VmsnapConfig``
        :raises: ``VmsnapArgumentError`` if the compression type is invalid.
        """
        if not exists(config_file):
            return VmsnapConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        cfg.read([config_file])
        if not cfg.has_section(_VMSNAP_CFG_GLOBAL):
            return VmsnapConfig()

        section = cfg[_VMSNAP_CFG_GLOBAL]
        disable_plugins = []
        if _VMSNAP_CFG_DISABLE_PLUGINS in section:
            plugins = section[_VMSNAP_CFG_DISABLE_PLUGINS]
            disable_plugins = [plug.strip() for plug in plugins.split(",") if plug.strip()]

        return VmsnapConfig(
            storage_root=section.get(_VMSNAP_CFG_STORAGE_ROOT, DEFAULT_STORAGE_ROOT),
            compression=check_compression(
                section.get(_VMSNAP_CFG_COMPRESSION, COMPRESSION_ZSTD)
            ),
            dataset_options=section.get(_VMSNAP_CFG_DATASET_OPTIONS, ""),
            vmm_dir=section.get(_VMSNAP_CFG_VMM_DIR, DEFAULT_VMM_DIR),
            disable_plugins=disable_plugins,
        )


class Manager:
    """
    Guest storage manager: the high level interface to snapshots, clones,
    images and datasets of guests on the configured storage backend.
    """

    def __init__(
        self,
        config: Optional[VmsnapConfig] = None,
        plugins: Optional[List] = None,
        guest_state: Optional[GuestState] = None,
    ):
        """
        Initialise a new ``Manager``.

        :param config: Configuration to use instead of the system
                       configuration file.
        :param plugins: Backend plugin instances to use instead of loading
                        the installed plugins.
        :param guest_state: Guest power state collaborator to use instead
                            of one watching ``config.vmm_dir``.
        :raises: ``VmsnapBackendUnavailableError`` or
                 ``VmsnapMountNotFoundError`` if the storage location
                 cannot be resolved.
        """
        self.config = config or VmsnapConfig.from_file(_VMSNAP_CFG_PATH)
        self.disable_plugins = self.config.disable_plugins

        plugin_classes = load_plugins()
        if plugins is None:
            self.plugins = self._load_plugins(plugin_classes)
        else:
            self.plugins = list(plugins)

        self.backend: StorageBackend = resolve_backend(
            self.config.storage_root,
            self.plugins,
            markers=plugin_markers(plugin_classes),
        )
        _log_debug_manager("Using guest storage %s", self.backend)

        self.guest_state = guest_state or GuestState(self.config.vmm_dir)
        self.datasets = Datasets(self.backend, self.config.dataset_options)
        self.snapshots = Snapshots(self.backend, self.guest_state)
        self.cloner = Cloner(self.backend, self.snapshots, self.guest_state)
        self.images = Images(
            self.backend, self.datasets, self.snapshots, self.config.compression
        )

    def _load_plugins(self, plugin_classes):
        plugins = []
        for plugin_class in plugin_classes:
            if plugin_class.name in self.disable_plugins:
                _log_debug("Skipping disabled plugin '%s'", plugin_class.name)
                continue
            _log_debug("Loading plugin class '%s'", plugin_class.__name__)
            try:
                plugin_cfg = self._load_plugin_config(plugin_class.name)
                plugins.append(plugin_class(_log, plugin_cfg))
            except VmsnapNotFoundError as err:
                _log_debug(
                    "Plugin dependencies missing: %s (%s), skipping.",
                    plugin_class.__name__,
                    err,
                )
            except VmsnapPluginError as err:
                _log_error("Disabling plugin %s: %s", plugin_class.__name__, err)
        return plugins

    def _load_plugin_config(self, plugin_name: str) -> ConfigParser:
        """
        Load optional configuration file for plugin ``plugin_name``.

        :param plugin_name: The name of the plugin to load config for.
        :type plugin_name: ``str``
        :returns: A (possibly empty) ``ConfigParser`` instance.
        :rtype: ``ConfigParser``
        """
        plugin_conf_file = join(_PLUGINS_D_PATH, f"{plugin_name}.conf")
        cfg = ConfigParser()

        if exists(plugin_conf_file):
            _log_debug("Loading plugin configuration from '%s'", plugin_conf_file)
            cfg.read([plugin_conf_file])

        return cfg

    def create_snapshot(self, token: str, force: bool = False) -> Snapshot:
        """
        Create a recursive snapshot from a ``guest[@label]`` token.

        :param token: The ``guest[@label]`` token.
        :param force: Snapshot a running guest.
        :returns: The new ``Snapshot``.
        """
        return self.snapshots.create(token, force=force)

    def list_snapshots(self, name: str) -> List[str]:
        """
        Return the snapshot labels of guest ``name``, oldest first.
        """
        return self.snapshots.list(name)

    def destroy_snapshot(self, token: str):
        """
        Destroy the recursive snapshot named by a ``guest@label`` token.
        """
        self.snapshots.destroy(token)

    def rollback(self, token: str, force: bool = False) -> Snapshot:
        """
        Roll back a stopped guest to the snapshot named by ``guest@label``.

        :param force: Destroy snapshots newer than the target label.
        """
        return self.snapshots.rollback(token, force=force)

    def clone(self, source_token: str, target: str) -> CloneOperation:
        """
        Clone the guest named by ``source_token`` to new guest ``target``.
        """
        return self.cloner.clone(source_token, target)

    def create_image(self, name: str, description: Optional[str] = None) -> Image:
        return self.images.create(name, description=description)

    def list_images(self) -> List[Image]:
        return self.images.list()

    def provision_image(self, uuid: str, new_name: str) -> Image:
        return self.images.provision(uuid, new_name)

    def destroy_image(self, uuid: str):
        self.images.destroy(uuid)

    def create_dataset(self, name: str, options: Optional[str] = None):
        self.datasets.create(name, options=options)

    def destroy_dataset(self, name: str, best_effort: bool = False) -> bool:
        return self.datasets.destroy(name, best_effort=best_effort)

    def rename_dataset(self, old_name: str, new_name: str):
        self.datasets.rename(old_name, new_name)

    def create_volume(
        self, name: str, size: str, sparse: bool = False, options: Optional[str] = None
    ):
        self.datasets.create_volume(name, size, sparse=sparse, options=options)


__all__ = [
    "DEFAULT_STORAGE_ROOT",
    "DEFAULT_VMM_DIR",
    "Manager",
    "VmsnapConfig",
]
