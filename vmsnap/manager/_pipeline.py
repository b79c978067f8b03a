# Copyright Red Hat
#
# vmsnap/manager/_pipeline.py - Image data stream compression
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Compression stages of the image send and receive pipelines.

An image data file is the backend's replication stream passed through a
compressor on the way out, and through the matching decompressor on the way
back in. The backend stage and the compression stage run in sequence over a
single byte stream: the caller only learns the outcome once the whole
pipeline has completed.
"""
from typing import Tuple
import logging
import lzma
import os

import zstandard as zstd

from vmsnap import (
    VMSNAP_SUBSYSTEM_IMAGES,
    VmsnapArgumentError,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Zstandard compression
COMPRESSION_ZSTD = "zstd"

#: XZ (LZMA) compression
COMPRESSION_XZ = "xz"

_COMPRESSION_EXTENSIONS = {
    COMPRESSION_ZSTD: "zst",
    COMPRESSION_XZ: "xz",
}

#: Supported image compression types
COMPRESSION_TYPES = list(_COMPRESSION_EXTENSIONS.keys())


def _log_debug_images(msg, *args, **kwargs):
    """A wrapper for images subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": VMSNAP_SUBSYSTEM_IMAGES}, **kwargs)


def check_compression(compress: str) -> str:
    """
    :raises: ``VmsnapArgumentError`` if ``compress`` is not a supported
             compression type.
    """
    if compress not in _COMPRESSION_EXTENSIONS:
        raise VmsnapArgumentError(
            f"Unknown compression type: {compress} "
            f"(expected one of {', '.join(COMPRESSION_TYPES)})"
        )
    return compress


def compression_extension(compress: str) -> str:
    """
    Return the file name extension used for ``compress`` data files.
    """
    return _COMPRESSION_EXTENSIONS[check_compression(compress)]


def compression_for_file(file_name: str) -> str:
    """
    Determine the compression type of ``file_name`` from its extension.

    :raises: ``VmsnapArgumentError`` if the extension is not recognised.
    """
    ext = file_name.rsplit(".", 1)[-1]
    for compress, compress_ext in _COMPRESSION_EXTENSIONS.items():
        if ext == compress_ext:
            return compress
    raise VmsnapArgumentError(f"Unknown compression type for image file: {file_name}")


def compression_errors(compress: str) -> Tuple[type, ...]:
    """
    Return the exception types raised by the ``compress`` codec on corrupt
    or truncated data.
    """
    if compress == COMPRESSION_ZSTD:
        return (zstd.ZstdError,)
    if compress == COMPRESSION_XZ:
        return (lzma.LZMAError, EOFError)
    return ()


def send_to_file(provider, dataset: str, label: str, path: str, compress: str):
    """
    Stream the recursive replication stream of ``dataset@label`` from
    ``provider`` through the ``compress`` compressor into ``path``.

    :raises: ``VmsnapCalloutError`` if the backend send fails, ``OSError``
             on file errors, or one of ``compression_errors(compress)``.
    """
    check_compression(compress)
    _log_debug_images(
        "Sending %s@%s to %s (%s)", dataset, label, path, compress
    )
    if compress == COMPRESSION_ZSTD:
        cctx = zstd.ZstdCompressor()
        with open(path, "wb") as fp:
            with cctx.stream_writer(fp, closefd=False) as compressor:
                provider.send(dataset, label, compressor)
            fp.flush()
            os.fsync(fp.fileno())
    else:
        with open(path, "wb") as fp:
            with lzma.LZMAFile(filename=fp, mode="wb") as compressor:
                provider.send(dataset, label, compressor)
            fp.flush()
            os.fsync(fp.fileno())


def receive_from_file(provider, dataset: str, path: str, compress: str):
    """
    Stream the data file ``path`` through the ``compress`` decompressor
    into a backend receive of ``dataset``.

    :raises: ``VmsnapCalloutError`` if the backend receive fails,
             ``OSError`` on file errors, or one of
             ``compression_errors(compress)``.
    """
    check_compression(compress)
    _log_debug_images("Receiving %s from %s (%s)", dataset, path, compress)
    if compress == COMPRESSION_ZSTD:
        dctx = zstd.ZstdDecompressor()
        with open(path, "rb") as fp:
            with dctx.stream_reader(fp, closefd=False) as reader:
                provider.receive(dataset, reader)
    else:
        with lzma.LZMAFile(filename=path, mode="rb") as reader:
            provider.receive(dataset, reader)


__all__ = [
    "COMPRESSION_ZSTD",
    "COMPRESSION_XZ",
    "COMPRESSION_TYPES",
    "check_compression",
    "compression_extension",
    "compression_for_file",
    "compression_errors",
    "send_to_file",
    "receive_from_file",
]
