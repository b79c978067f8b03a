# Copyright Red Hat
#
# vmsnap/manager/_images.py - Guest image packaging
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Package guests into portable images and provision guests from them.

An image is a compressed replication stream of a guest's dataset tree,
``images/<uuid>.<backend>.<ext>``, described by the manifest record
``images/<uuid>.manifest``.
"""
from datetime import datetime
from os.path import basename, exists, isdir, join
from typing import List, Optional
from uuid import uuid4
import logging
import os

from vmsnap import (
    DEFAULT_IMAGE_DESCRIPTION,
    GUEST_CONFIG_SUFFIX,
    MANIFEST_CREATED,
    MANIFEST_DESCRIPTION,
    MANIFEST_FILENAME,
    MANIFEST_NAME,
    VMSNAP_SUBSYSTEM_IMAGES,
    VmsnapArgumentError,
    VmsnapCalloutError,
    VmsnapExistsError,
    VmsnapImageCreateError,
    VmsnapImageDestroyError,
    VmsnapImageProvisionError,
    VmsnapManifestError,
    VmsnapNotAGuestError,
    VmsnapNotFoundError,
    VmsnapSnapshotError,
    StorageBackend,
    Image,
    validate_guest_name,
)

from ._backend import Datasets, require_backend
from ._guests import KeyValueFile, check_record_value
from ._pipeline import (
    COMPRESSION_ZSTD,
    check_compression,
    compression_errors,
    compression_extension,
    compression_for_file,
    receive_from_file,
    send_to_file,
)
from ._snapshots import Snapshots

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Name of the dataset holding image data files and manifests
IMAGES_DATASET = "images"

#: Image manifest file name suffix
MANIFEST_SUFFIX = ".manifest"


def _log_debug_images(msg, *args, **kwargs):
    """A wrapper for images subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": VMSNAP_SUBSYSTEM_IMAGES}, **kwargs)


def _parse_created(value: Optional[str], uuid: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        _log_warn("Image %s has malformed creation time: %s", uuid, value)
        return None


def _unlink_quiet(path: str):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as err:
        _log_error("Error removing %s: %s", path, err)


class Images:
    """
    Create, list, provision and destroy guest images.
    """

    def __init__(
        self,
        backend: StorageBackend,
        datasets: Datasets,
        snapshots: Snapshots,
        compression: str = COMPRESSION_ZSTD,
    ):
        self.backend = backend
        self.datasets = datasets
        self.snapshots = snapshots
        self.compression = check_compression(compression)

    @property
    def images_dir(self) -> str:
        return self.backend.path(IMAGES_DATASET)

    def _manifest_path(self, uuid: str) -> str:
        return join(self.images_dir, uuid + MANIFEST_SUFFIX)

    def _load_manifest(self, uuid: str) -> KeyValueFile:
        path = self._manifest_path(uuid)
        if not exists(path):
            raise VmsnapNotFoundError(f"Image {uuid} not found")
        try:
            return KeyValueFile.load(path)
        except OSError as err:
            raise VmsnapManifestError(
                f"Could not read manifest for image {uuid}: {err}"
            ) from err

    def _image_from_manifest(self, uuid: str, manifest: KeyValueFile) -> Image:
        return Image(
            uuid,
            manifest.get(MANIFEST_NAME),
            manifest.get(MANIFEST_FILENAME),
            description=manifest.get(MANIFEST_DESCRIPTION, DEFAULT_IMAGE_DESCRIPTION),
            created=_parse_created(manifest.get(MANIFEST_CREATED), uuid),
        )

    def _ensure_images_dataset(self):
        if not self.datasets.exists(IMAGES_DATASET):
            _log_info("Creating image dataset %s", self.backend.dataset(IMAGES_DATASET))
            self.datasets.create(IMAGES_DATASET)

    def _destroy_transient_snapshot(self, name: str, uuid: str):
        dataset = self.backend.dataset(name)
        try:
            self.backend.provider.destroy_snapshot(dataset, uuid, recursive=True)
        except VmsnapCalloutError as err:
            _log_warn("Failed to destroy image snapshot %s@%s: %s", dataset, uuid, err)

    def create(self, name: str, description: Optional[str] = None) -> Image:
        """
        Package guest ``name`` into a new image.

        :param name: The guest to package.
        :param description: An optional image description.
        :returns: The new ``Image``.
        :raises: ``VmsnapBackendRequiredError``, ``VmsnapArgumentError``,
                 ``VmsnapNotAGuestError``, ``VmsnapDatasetCreateError`` or
                 ``VmsnapImageCreateError``.
        """
        require_backend(self.backend, "create image")
        validate_guest_name(name)
        if description:
            check_record_value(description)
        if not isdir(self.backend.path(name)):
            raise VmsnapNotAGuestError(
                f"{name} does not appear to be a valid virtual machine"
            )
        self._ensure_images_dataset()

        uuid = str(uuid4())
        file_name = (
            f"{uuid}.{self.backend.provider.name}."
            f"{compression_extension(self.compression)}"
        )
        data_path = join(self.images_dir, file_name)

        try:
            self.snapshots.snapshot_tree(name, uuid)
        except VmsnapSnapshotError as err:
            raise VmsnapImageCreateError(
                f"Failed to snapshot {name} for image: {err}"
            ) from err

        _log_info("Creating image %s of %s", uuid, name)
        try:
            send_to_file(
                self.backend.provider,
                self.backend.dataset(name),
                uuid,
                data_path,
                self.compression,
            )
        except (VmsnapCalloutError, OSError, *compression_errors(self.compression)) as err:
            _unlink_quiet(data_path)
            raise VmsnapImageCreateError(
                f"Failed to write image data for {name}: {err}"
            ) from err
        finally:
            self._destroy_transient_snapshot(name, uuid)

        try:
            size = os.stat(data_path).st_size
        except OSError as err:
            raise VmsnapImageCreateError(
                f"Image data file {data_path} missing: {err}"
            ) from err
        if not size:
            _unlink_quiet(data_path)
            raise VmsnapImageCreateError(f"Image data file {data_path} is empty")
        _log_debug_images("Wrote %d bytes to %s", size, data_path)

        created = datetime.now().replace(microsecond=0)
        manifest = KeyValueFile(self._manifest_path(uuid))
        manifest.set(MANIFEST_DESCRIPTION, description or DEFAULT_IMAGE_DESCRIPTION)
        manifest.set(MANIFEST_CREATED, created.isoformat())
        manifest.set(MANIFEST_NAME, name)
        manifest.set(MANIFEST_FILENAME, file_name)
        try:
            manifest.save()
        except OSError as err:
            _unlink_quiet(data_path)
            raise VmsnapImageCreateError(
                f"Failed to write manifest for image {uuid}: {err}"
            ) from err

        return self._image_from_manifest(uuid, manifest)

    def list(self) -> List[Image]:
        """
        Return all images, oldest first. An image whose data file is
        missing is still returned, and reported as inconsistent.
        """
        if not isdir(self.images_dir):
            return []
        images = []
        for entry in sorted(os.listdir(self.images_dir)):
            if not entry.endswith(MANIFEST_SUFFIX):
                continue
            uuid = entry[: -len(MANIFEST_SUFFIX)]
            try:
                manifest = KeyValueFile.load(join(self.images_dir, entry))
            except OSError as err:
                _log_warn("Skipping unreadable manifest %s: %s", entry, err)
                continue
            image = self._image_from_manifest(uuid, manifest)
            if not image.filename:
                _log_warn("Image %s manifest does not name a data file", uuid)
            elif not exists(join(self.images_dir, image.filename)):
                _log_warn("Image %s data file %s is missing", uuid, image.filename)
            images.append(image)
        return sorted(images, key=lambda image: image.created or datetime.min)

    def provision(self, uuid: str, new_name: str) -> Image:
        """
        Create the guest ``new_name`` from image ``uuid``.

        :returns: The ``Image`` the guest was provisioned from.
        :raises: ``VmsnapNotFoundError`` if the image or its data file is
                 missing, ``VmsnapExistsError`` if ``new_name`` exists,
                 ``VmsnapManifestError`` if the manifest is incomplete, or
                 ``VmsnapImageProvisionError`` on backend error.
        """
        require_backend(self.backend, "provision image")
        manifest = self._load_manifest(uuid)
        validate_guest_name(new_name)
        if exists(self.backend.path(new_name)):
            raise VmsnapExistsError(f"Guest {new_name} already exists")

        image = self._image_from_manifest(uuid, manifest)
        if not image.filename or not image.name:
            raise VmsnapManifestError(
                f"Image {uuid} manifest is missing the "
                f"{MANIFEST_FILENAME if not image.filename else MANIFEST_NAME} field"
            )
        data_path = join(self.images_dir, basename(image.filename))
        if not exists(data_path):
            raise VmsnapNotFoundError(f"Image {uuid} data file {image.filename} not found")

        try:
            compress = compression_for_file(image.filename)
        except VmsnapArgumentError as err:
            raise VmsnapImageProvisionError(str(err)) from err

        dataset = self.backend.dataset(new_name)
        _log_info("Provisioning %s from image %s", new_name, uuid)
        try:
            receive_from_file(self.backend.provider, dataset, data_path, compress)
        except (VmsnapCalloutError, OSError, *compression_errors(compress)) as err:
            raise VmsnapImageProvisionError(
                f"Failed to receive image {uuid} into {dataset}: {err}"
            ) from err

        try:
            self.backend.provider.destroy_snapshot(dataset, uuid, recursive=True)
        except VmsnapCalloutError as err:
            raise VmsnapImageProvisionError(
                f"Failed to remove image snapshot {dataset}@{uuid}: {err}"
            ) from err

        if image.name != new_name:
            old_conf = self.backend.path(new_name, image.name + GUEST_CONFIG_SUFFIX)
            new_conf = self.backend.path(new_name, new_name + GUEST_CONFIG_SUFFIX)
            try:
                os.rename(old_conf, new_conf)
            except OSError as err:
                raise VmsnapImageProvisionError(
                    f"Failed to rename configuration for {new_name}: {err}"
                ) from err
        return image

    def destroy(self, uuid: str):
        """
        Remove image ``uuid``: its data file and then its manifest.

        :raises: ``VmsnapNotFoundError`` if the image does not exist,
                 ``VmsnapManifestError`` if the manifest names no data file,
                 or ``VmsnapImageDestroyError`` if a file cannot be removed.
        """
        manifest = self._load_manifest(uuid)
        file_name = manifest.get(MANIFEST_FILENAME)
        if not file_name:
            raise VmsnapManifestError(
                f"Image {uuid} manifest is missing the {MANIFEST_FILENAME} field"
            )
        data_path = join(self.images_dir, basename(file_name))
        try:
            os.unlink(data_path)
        except FileNotFoundError:
            _log_warn("Image %s data file %s was already missing", uuid, file_name)
        except OSError as err:
            raise VmsnapImageDestroyError(
                f"Failed to remove image {uuid} data file {file_name}: {err}"
            ) from err
        try:
            os.unlink(self._manifest_path(uuid))
        except OSError as err:
            raise VmsnapImageDestroyError(
                f"Failed to remove image {uuid} manifest: {err}"
            ) from err
        _log_info("Destroyed image %s", uuid)


__all__ = [
    "IMAGES_DATASET",
    "MANIFEST_SUFFIX",
    "Images",
]
